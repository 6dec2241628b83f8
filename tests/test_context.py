import threading

import torch

from pagedseq.worker.context import Context, ContextHolder, get_context, reset_context, set_context


def _prefill_args():
    return dict(
        is_prefill=True,
        cu_seqlens_q=torch.tensor([0, 3, 5], dtype=torch.int32),
        cu_seqlens_k=torch.tensor([0, 3, 5], dtype=torch.int32),
        max_seqlen_q=3,
        max_seqlen_k=3,
        slot_mapping=torch.tensor([0, 1, 2, 256, 257], dtype=torch.int32),
    )


def test_default_context_when_unset():
    context = get_context()
    assert context == Context()
    assert not context.is_prefill
    assert context.max_seqlen_q == context.max_seqlen_k == 0
    assert context.slot_mapping is None
    assert context.block_tables is None


def test_get_after_set_round_trips():
    args = _prefill_args()
    set_context(**args)
    assert get_context() == Context(**args)


def test_set_replaces_instead_of_merging():
    set_context(**_prefill_args())
    set_context(
        False,
        max_seqlen_q=1,
        max_seqlen_k=9,
        context_lens=torch.tensor([9], dtype=torch.int32),
    )
    context = get_context()
    assert not context.is_prefill
    assert context.cu_seqlens_q is None
    assert context.slot_mapping is None
    assert torch.equal(context.context_lens, torch.tensor([9], dtype=torch.int32))


def test_reset_context():
    set_context(**_prefill_args())
    reset_context()
    assert get_context() == Context()


def test_get_returns_a_copy():
    holder = ContextHolder()
    holder.set(Context(is_prefill=True, max_seqlen_q=4))
    snapshot = holder.get()
    snapshot.max_seqlen_q = 100
    assert holder.get().max_seqlen_q == 4


def test_equality_compares_tensors():
    a = Context(slot_mapping=torch.tensor([1, 2]))
    assert a == Context(slot_mapping=torch.tensor([1, 2]))
    assert a != Context(slot_mapping=torch.tensor([1, 3]))
    assert a != Context()


def test_concurrent_writers_last_one_wins():
    holder = ContextHolder()
    barrier = threading.Barrier(8)
    torn_reads = []

    def writer(i):
        barrier.wait()
        for _ in range(100):
            holder.set(Context(max_seqlen_q=i, max_seqlen_k=i))
            context = holder.get()
            # A snapshot is never a mix of two writers
            if context.max_seqlen_q != context.max_seqlen_k:
                torn_reads.append(context)

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert not torn_reads
    assert holder.get().max_seqlen_q in range(8)


def test_get_shares_tensors_with_the_slot():
    holder = ContextHolder()
    slot_mapping = torch.tensor([0, 1, 2], dtype=torch.int32)
    holder.set(Context(is_prefill=True, slot_mapping=slot_mapping))
    snapshot = holder.get()
    snapshot.slot_mapping = torch.tensor([7], dtype=torch.int32)
    assert holder.get().slot_mapping is slot_mapping
    assert holder.get().slot_mapping is holder.get().slot_mapping
