"""
Request-level data structures: sampling parameters and the per-request Sequence ledger.

A Sequence tracks which tokens a request has, how many of them already have
committed KV cache entries, and which physical blocks back its logical blocks.
It is mutated by a single owning scheduler thread and is not internally
synchronized; only sequence ID issuance is thread-safe.
"""

import enum
import itertools
import threading
import dataclasses
from abc import ABC, abstractmethod

from pagedseq.utils import cdiv

MAX_TOKEN_ID = 2**32 - 1


@dataclasses.dataclass
class SamplingParams:
    """
    Parameters that gate generation length and determinism.

    temperature == 0 means greedy sampling.
    """
    temperature: float = 1.0
    max_tokens: int = 64
    ignore_eos: bool = False

    def __post_init__(self):
        if self.temperature < 0:
            raise ValueError(f"temperature should be non-negative, got {self.temperature}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens should be positive, got {self.max_tokens}")


class SequenceStatus(enum.IntEnum):
    """
    Lifecycle of a sequence. Transitions only move forward.
    """
    WAITING = 0
    RUNNING = 1
    FINISHED = 2


class IdGenerator(ABC):
    """
    IdGenerator - Issues sequence IDs
    """

    @abstractmethod
    def next_id(self) -> int:
        """
        Return a fresh ID, never returned before by this generator
        """
        raise NotImplementedError


class AtomicIdGenerator(IdGenerator):
    """
    AtomicIdGenerator - A monotonic counter that is safe to call from multiple threads
    """

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


def _check_token_id(token_id: int):
    if not 0 <= token_id <= MAX_TOKEN_ID:
        raise ValueError(f"Token id {token_id} does not fit in an unsigned 32-bit integer")


class Sequence:
    """
    Sequence - The state of one generation request

    The first `num_prompt_tokens` entries of `token_ids` are the prompt and never
    change; completion tokens are appended one at a time with `append_token()`.

    `block_table` is owned by the block allocator, which appends physical block
    IDs as the sequence grows, and `num_cached_tokens` is advanced as KV cache
    writes are committed.
    """

    block_size = 256
    id_generator: IdGenerator = AtomicIdGenerator()

    def __init__(
        self,
        token_ids: list[int],
        sampling_params: SamplingParams = None,
        id_generator: IdGenerator = None
    ):
        if not token_ids:
            raise ValueError("Cannot create a sequence with empty token_ids")
        for token_id in token_ids:
            _check_token_id(token_id)
        sampling_params = sampling_params or SamplingParams()

        self.seq_id = (id_generator or Sequence.id_generator).next_id()
        self._status = SequenceStatus.WAITING
        self.token_ids = list(token_ids)
        self.last_token = self.token_ids[-1]
        self.num_tokens = len(self.token_ids)
        self.num_prompt_tokens = self.num_tokens
        self._num_cached_tokens = 0
        self.block_table: list[int] = []

        self.temperature = sampling_params.temperature
        self.max_tokens = sampling_params.max_tokens
        self.ignore_eos = sampling_params.ignore_eos

    def __len__(self):
        return self.num_tokens

    def __getitem__(self, index: int) -> int:
        if isinstance(index, slice):
            return self.token_ids[index]
        if not 0 <= index < self.num_tokens:
            raise IndexError(f"Token index {index} out of range for sequence {self.seq_id} of length {self.num_tokens}")
        return self.token_ids[index]

    def __repr__(self):
        return (
            f"Sequence(seq_id={self.seq_id}, status={self._status.name}, num_tokens={self.num_tokens}, "
            f"num_prompt_tokens={self.num_prompt_tokens}, num_cached_tokens={self._num_cached_tokens}, "
            f"block_table={self.block_table})"
        )

    @property
    def status(self) -> SequenceStatus:
        return self._status

    @status.setter
    def status(self, new_status: SequenceStatus):
        if new_status < self._status:
            raise ValueError(
                f"Sequence {self.seq_id} cannot go back from {self._status.name} to {new_status.name}"
            )
        self._status = new_status

    @property
    def is_finished(self) -> bool:
        return self._status == SequenceStatus.FINISHED

    @property
    def num_cached_tokens(self) -> int:
        return self._num_cached_tokens

    @num_cached_tokens.setter
    def num_cached_tokens(self, value: int):
        if not 0 <= value <= self.num_tokens:
            raise ValueError(
                f"num_cached_tokens {value} out of range [0, {self.num_tokens}] for sequence {self.seq_id}"
            )
        self._num_cached_tokens = value

    @property
    def num_completion_tokens(self) -> int:
        return self.num_tokens - self.num_prompt_tokens

    @property
    def prompt_token_ids(self) -> list[int]:
        return self.token_ids[:self.num_prompt_tokens]

    @property
    def completion_token_ids(self) -> list[int]:
        return self.token_ids[self.num_prompt_tokens:]

    @property
    def num_cached_blocks(self) -> int:
        # A partially filled block does not count as cached
        return self._num_cached_tokens // self.block_size

    @property
    def num_blocks(self) -> int:
        return cdiv(self.num_tokens, self.block_size)

    @property
    def last_block_num_tokens(self) -> int:
        num_blocks = self.num_blocks
        if num_blocks == 0:
            return 0
        return self.num_tokens - (num_blocks - 1) * self.block_size

    def block(self, i: int) -> list[int]:
        """
        Return the tokens that belong to logical block #i
        """
        if not 0 <= i < self.num_blocks:
            raise IndexError(f"Block index {i} out of range for sequence {self.seq_id} with {self.num_blocks} blocks")
        return self.token_ids[i * self.block_size: min((i + 1) * self.block_size, self.num_tokens)]

    def append_token(self, token_id: int):
        """
        Append a newly generated token. The status is left untouched, the caller
        decides whether the sequence is finished.
        """
        _check_token_id(token_id)
        self.token_ids.append(token_id)
        self.last_token = token_id
        self.num_tokens += 1

    def __getstate__(self):
        return {
            "seq_id": self.seq_id,
            "status": int(self._status),
            "token_ids": self.token_ids,
            "num_prompt_tokens": self.num_prompt_tokens,
            "num_cached_tokens": self._num_cached_tokens,
            "block_table": self.block_table,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "ignore_eos": self.ignore_eos,
        }

    def __setstate__(self, state: dict):
        self.seq_id = state["seq_id"]
        self._status = SequenceStatus(state["status"])
        self.token_ids = list(state["token_ids"])
        self.last_token = self.token_ids[-1]
        self.num_tokens = len(self.token_ids)
        self.num_prompt_tokens = state["num_prompt_tokens"]
        self._num_cached_tokens = state["num_cached_tokens"]
        self.block_table = list(state["block_table"])
        self.temperature = state["temperature"]
        self.max_tokens = state["max_tokens"]
        self.ignore_eos = state["ignore_eos"]
