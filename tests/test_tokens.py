"""Tests for the token allocator."""

from concurrent.futures import ThreadPoolExecutor

from conftest import DAY, NEXT_DAY
from tokens import TokenAllocator


class TestTokenAllocator:
    def test_starts_at_one(self):
        tokens = TokenAllocator()

        assert tokens.allocate("d1", DAY) == 1
        assert tokens.allocate("d1", DAY) == 2

    def test_sequences_are_per_doctor_and_date(self):
        tokens = TokenAllocator()
        tokens.allocate("d1", DAY)

        assert tokens.allocate("d2", DAY) == 1
        assert tokens.allocate("d1", NEXT_DAY) == 1

    def test_peek_does_not_consume(self):
        tokens = TokenAllocator()
        tokens.allocate("d1", DAY)

        assert tokens.peek("d1", DAY) == 2
        assert tokens.peek("d1", DAY) == 2
        assert tokens.allocate("d1", DAY) == 2

    def test_concurrent_allocation_is_dense(self):
        tokens = TokenAllocator()

        with ThreadPoolExecutor(max_workers=16) as pool:
            issued = list(pool.map(lambda _: tokens.allocate("d1", DAY), range(200)))

        assert sorted(issued) == list(range(1, 201))
