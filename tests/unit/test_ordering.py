from __future__ import annotations

from stt_orchestrator.services.ordering import SequenceReorderQueue


def test_out_of_order_results_released_in_sequence() -> None:
    q = SequenceReorderQueue()

    assert q.complete(2, "b") == []
    assert q.complete(3, "c") == []
    assert q.pending == [2, 3]

    assert q.complete(1, "a") == [(1, "a"), (2, "b"), (3, "c")]
    assert q.next_seq == 4
    assert q.pending == []


def test_gap_unblocks_following_results() -> None:
    q = SequenceReorderQueue()
    q.complete(2, "b")

    assert q.complete(1, None) == [(1, None), (2, "b")]


def test_late_and_duplicate_results_ignored() -> None:
    q = SequenceReorderQueue()
    q.complete(1, None)
    q.complete(3, "c")

    assert q.complete(1, "late") == []
    assert q.complete(3, "again") == []
    assert q.complete(2, "b") == [(2, "b"), (3, "c")]


def test_reset() -> None:
    q = SequenceReorderQueue()
    q.complete(5, "x")
    q.reset()

    assert q.next_seq == 1
    assert q.pending == []
