"""
The attention-kernel view of the batch being executed.

The scheduler calls `set_context()` once per step, right before the model
forward pass; attention layers deep inside the forward pass call
`get_context()` instead of receiving the metadata as an argument. Each
get / set is atomic, but a whole set -> forward -> get sequence is not: the
caller runs one batch at a time.
"""

import copy
import logging
import threading
import dataclasses

import torch

logger = logging.getLogger(__name__)

@dataclasses.dataclass(eq=False)
class Context:
    is_prefill: bool = False

    # Cumulative query / key lengths, [num_seqs+1], = [0, L0, L0+L1, ...]
    cu_seqlens_q: torch.Tensor = None
    cu_seqlens_k: torch.Tensor = None
    max_seqlen_q: int = 0
    max_seqlen_k: int = 0

    slot_mapping: torch.Tensor = None   # [num_tokens], token -> physical cache slot
    context_lens: torch.Tensor = None   # [num_seqs], decode only
    block_tables: torch.Tensor = None   # [num_seqs, max_num_blocks], padded with -1

    def __eq__(self, other) -> bool:
        if not isinstance(other, Context):
            return NotImplemented
        for field in dataclasses.fields(self):
            mine, theirs = getattr(self, field.name), getattr(other, field.name)
            if isinstance(mine, torch.Tensor) or isinstance(theirs, torch.Tensor):
                if mine is None or theirs is None or not torch.equal(mine, theirs):
                    return False
            elif mine != theirs:
                return False
        return True


class ContextHolder:
    """
    ContextHolder - A single, lock-protected slot holding the current Context

    `set()` always replaces the whole snapshot, fields are never merged.

    `get()` returns a shallow copy: rebinding a field on it leaves the slot
    untouched, but its tensors are the very tensors held by the slot. Readers
    must not modify them in place; clone a tensor before mutating it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._context: Context = None

    def set(self, context: Context):
        with self._lock:
            self._context = context

    def get(self) -> Context:
        """
        Return a shallow copy of the current snapshot (tensors shared with the
        slot), or an empty decode context if none was set
        """
        with self._lock:
            if self._context is None:
                return Context()
            return copy.copy(self._context)

    def reset(self):
        with self._lock:
            self._context = None


_CONTEXT_HOLDER = ContextHolder()

def get_context() -> Context:
    return _CONTEXT_HOLDER.get()

def set_context(
    is_prefill: bool,
    cu_seqlens_q: torch.Tensor = None,
    cu_seqlens_k: torch.Tensor = None,
    max_seqlen_q: int = 0,
    max_seqlen_k: int = 0,
    slot_mapping: torch.Tensor = None,
    context_lens: torch.Tensor = None,
    block_tables: torch.Tensor = None
):
    _CONTEXT_HOLDER.set(Context(
        is_prefill,
        cu_seqlens_q,
        cu_seqlens_k,
        max_seqlen_q,
        max_seqlen_k,
        slot_mapping,
        context_lens,
        block_tables
    ))

def reset_context():
    logger.debug("[Context] Resetting the global context")
    _CONTEXT_HOLDER.reset()
