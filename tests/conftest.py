import itertools

import pytest

from pagedseq.structs import IdGenerator
from pagedseq.worker.context import reset_context


class CountingIdGenerator(IdGenerator):
    """Deterministic ids for tests, starting at 0 for every test."""

    def __init__(self):
        self._counter = itertools.count()

    def next_id(self) -> int:
        return next(self._counter)


@pytest.fixture
def id_generator():
    return CountingIdGenerator()


@pytest.fixture(autouse=True)
def clean_context():
    reset_context()
    yield
    reset_context()
