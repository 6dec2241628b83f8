"""
Derive the per-step attention metadata from a batch of sequences, and fold
the sampled tokens back into them.

Most work should be already done by the block allocator: every sequence in
the batch must have enough blocks in its block table for all its tokens.
"""

import itertools

import torch

from pagedseq.structs import Sequence, SequenceStatus
from pagedseq.worker.context import set_context

def _check_block_table(seq: Sequence):
    if len(seq.block_table) < seq.num_blocks:
        raise RuntimeError(
            f"Sequence {seq.seq_id} needs {seq.num_blocks} blocks but only {len(seq.block_table)} "
            f"are allocated, the allocator has not caught up"
        )

def _slot_of(seq: Sequence, pos: int) -> int:
    return seq.block_table[pos // seq.block_size] * seq.block_size + pos % seq.block_size


def prepare_block_tables(seqs: list[Sequence], device: str = "cpu") -> torch.Tensor:
    """
    Stack the block tables of the sequences into a [num_seqs, max_num_blocks]
    tensor, padding with -1
    """
    max_len = max(len(seq.block_table) for seq in seqs)
    block_tables = [seq.block_table + [-1] * (max_len - len(seq.block_table)) for seq in seqs]
    return torch.tensor(block_tables, dtype=torch.int32, device=device)


def prepare_prefill(seqs: list[Sequence], device: str = "cpu") -> tuple[torch.Tensor, torch.Tensor]:
    """
    Prepare a prefill step: every token that has no KV cache entry yet is fed
    to the model. Sets the global context.

    Returns input_ids and positions, both [num_new_tokens].
    """
    assert seqs, "Cannot prepare an empty batch"
    input_ids = []
    positions = []
    seqlens_q = []
    seqlens_k = []
    slot_mapping = []
    for seq in seqs:
        _check_block_table(seq)
        start, end = seq.num_cached_tokens, seq.num_tokens
        input_ids.extend(seq.token_ids[start:end])
        positions.extend(range(start, end))
        seqlens_q.append(end - start)
        seqlens_k.append(end)
        slot_mapping.extend(_slot_of(seq, pos) for pos in range(start, end))

    cu_seqlens_q = [0] + list(itertools.accumulate(seqlens_q))
    cu_seqlens_k = [0] + list(itertools.accumulate(seqlens_k))
    # Block tables are only needed to read back a cached prefix
    block_tables = prepare_block_tables(seqs, device) if cu_seqlens_k[-1] > cu_seqlens_q[-1] else None

    set_context(
        True,
        torch.tensor(cu_seqlens_q, dtype=torch.int32, device=device),
        torch.tensor(cu_seqlens_k, dtype=torch.int32, device=device),
        max(seqlens_q),
        max(seqlens_k),
        torch.tensor(slot_mapping, dtype=torch.int32, device=device),
        None,
        block_tables
    )
    return (
        torch.tensor(input_ids, dtype=torch.int64, device=device),
        torch.tensor(positions, dtype=torch.int64, device=device)
    )


def prepare_decode(seqs: list[Sequence], device: str = "cpu") -> tuple[torch.Tensor, torch.Tensor]:
    """
    Prepare a decode step: only the last token of every sequence is fed to the
    model, attending to the whole sequence through the block tables. Sets the
    global context.

    Returns input_ids and positions, both [num_seqs].
    """
    assert seqs, "Cannot prepare an empty batch"
    for seq in seqs:
        _check_block_table(seq)

    input_ids = [seq.last_token for seq in seqs]
    positions = [seq.num_tokens - 1 for seq in seqs]
    context_lens = [seq.num_tokens for seq in seqs]
    slot_mapping = [
        seq.block_table[seq.num_blocks - 1] * seq.block_size + seq.last_block_num_tokens - 1
        for seq in seqs
    ]

    set_context(
        False,
        max_seqlen_q=1,
        max_seqlen_k=max(context_lens),
        slot_mapping=torch.tensor(slot_mapping, dtype=torch.int32, device=device),
        context_lens=torch.tensor(context_lens, dtype=torch.int32, device=device),
        block_tables=prepare_block_tables(seqs, device)
    )
    return (
        torch.tensor(input_ids, dtype=torch.int64, device=device),
        torch.tensor(positions, dtype=torch.int64, device=device)
    )


def update_sequences(seqs: list[Sequence], output_token_ids: list[int], eos_token_id: int = None) -> list[Sequence]:
    """
    Called at the end of each iteration.

    Append the output tokens to the sequences and mark the ones that hit EOS
    (unless ignore_eos is set) or max_tokens as finished.

    Return the finished sequences.
    """
    assert len(seqs) == len(output_token_ids), \
        f"Got {len(output_token_ids)} output tokens for {len(seqs)} sequences"
    finished_seqs = []
    for seq, token_id in zip(seqs, output_token_ids):
        seq.append_token(token_id)
        hit_eos = not seq.ignore_eos and eos_token_id is not None and token_id == eos_token_id
        if hit_eos or seq.num_completion_tokens >= seq.max_tokens:
            seq.status = SequenceStatus.FINISHED
            finished_seqs.append(seq)
    return finished_seqs
