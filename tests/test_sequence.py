"""Tests for sequence classification and the per-subscription window."""

from ua_session.sequence import SequenceWindow, classify
from ua_session.types import SequenceClass


class TestClassify:
    def test_next_number_is_in_order(self):
        for last in (0, 1, 7, 1000):
            assert classify(last, last + 1) == SequenceClass.IN_ORDER

    def test_old_or_equal_is_duplicate(self):
        for last in (1, 5, 200):
            for received in range(max(0, last - 5), last + 1):
                assert classify(last, received) == SequenceClass.DUPLICATE

    def test_small_gap_is_out_of_order(self):
        for gap in range(1, 11):
            assert classify(10, 10 + gap + 1) == SequenceClass.OUT_OF_ORDER

    def test_gap_up_to_outdated_threshold_is_out_of_order(self):
        assert classify(0, 101) == SequenceClass.OUT_OF_ORDER  # gap 100

    def test_gap_beyond_outdated_threshold(self):
        assert classify(0, 102) == SequenceClass.GAP  # gap 101
        assert classify(5, 500) == SequenceClass.GAP

    def test_custom_threshold(self):
        assert classify(0, 5, outdated_threshold=3) == SequenceClass.GAP
        assert classify(0, 4, outdated_threshold=3) == SequenceClass.OUT_OF_ORDER


class TestWindowInOrder:
    def test_in_order_advances(self):
        w = SequenceWindow()
        verdict = w.accept(1)
        assert verdict.kind == SequenceClass.IN_ORDER
        assert w.last_acked == 1
        assert w.pending_acks == (1,)

    def test_sequence_of_in_order(self):
        w = SequenceWindow()
        for n in range(1, 20):
            assert w.accept(n).kind == SequenceClass.IN_ORDER
        assert w.last_acked == 19
        assert w.missing() == ()


class TestWindowDuplicates:
    def test_duplicate_leaves_window_unchanged(self):
        w = SequenceWindow()
        for n in (1, 2, 3, 6):
            w.accept(n)
        before = w.snapshot()
        for n in (1, 2, 3):
            assert w.accept(n).kind == SequenceClass.DUPLICATE
        assert w.snapshot() == before

    def test_duplicate_of_number_received_ahead(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(4)
        before = w.snapshot()
        assert w.accept(4).kind == SequenceClass.DUPLICATE
        assert w.snapshot() == before

    def test_acknowledged_at_most_once(self):
        w = SequenceWindow()
        w.accept(1)
        assert w.take_acks() == [1]
        w.accept(1)
        assert w.take_acks() == []

    def test_stats_count_duplicates(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(1)
        w.accept(1)
        assert w.get_stats()["duplicates_detected"] == 2


class TestWindowOutOfOrder:
    def test_records_pending_gap(self):
        for gap in range(1, 11):
            w = SequenceWindow(last_acked=50)
            received = 50 + gap + 1
            verdict = w.accept(received)
            assert verdict.kind == SequenceClass.OUT_OF_ORDER
            assert w.last_acked == 50
            assert verdict.missing == tuple(range(51, received))
            assert w.missing() == tuple(range(51, received))

    def test_out_of_order_is_acknowledged(self):
        w = SequenceWindow()
        w.accept(3)
        assert w.pending_acks == (3,)

    def test_hole_closing_advances_across_run(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(3)
        w.accept(4)
        assert w.last_acked == 1
        assert w.accept(2).kind == SequenceClass.IN_ORDER
        assert w.last_acked == 4
        assert w.missing() == ()
        assert w.highest_received == 4

    def test_no_republish_within_threshold(self):
        w = SequenceWindow(out_of_order_threshold=10)
        w.accept(1)
        w.accept(12)  # 10 missing
        assert w.republish_candidates() == ()

    def test_republish_beyond_threshold(self):
        w = SequenceWindow(out_of_order_threshold=10)
        w.accept(1)
        w.accept(13)  # 11 missing
        assert w.republish_candidates() == tuple(range(2, 13))


class TestWindowGap:
    def test_gap_declares_loss_and_advances(self):
        w = SequenceWindow()
        w.accept(1)
        verdict = w.accept(103)
        assert verdict.kind == SequenceClass.GAP
        assert verdict.lost == tuple(range(2, 103))
        assert w.last_acked == 103
        assert w.missing() == ()

    def test_gap_skips_numbers_already_received_ahead(self):
        w = SequenceWindow(outdated_threshold=5)
        w.accept(1)
        w.accept(3)
        verdict = w.accept(10)
        assert verdict.kind == SequenceClass.GAP
        assert 3 not in verdict.lost
        assert verdict.lost == (2, 4, 5, 6, 7, 8, 9)
        assert w.last_acked == 10

    def test_stats_count_lost(self):
        w = SequenceWindow(outdated_threshold=5)
        w.accept(20)
        assert w.get_stats()["lost"] == 19


class TestDeclareLost:
    def test_fills_hole_without_acknowledging(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(4)
        w.take_acks()
        lost = w.declare_lost([2, 3])
        assert lost == (2, 3)
        assert w.last_acked == 4
        assert w.pending_acks == ()

    def test_ignores_numbers_not_missing(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(3)
        assert w.declare_lost([1, 3]) == ()
        assert w.last_acked == 1


class TestAcknowledgements:
    def test_take_clears_queue(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(2)
        assert w.take_acks() == [1, 2]
        assert w.pending_acks == ()

    def test_requeue_restores(self):
        w = SequenceWindow()
        w.accept(1)
        acks = w.take_acks()
        w.requeue_acks(acks)
        assert w.pending_acks == (1,)

    def test_requeue_does_not_duplicate(self):
        w = SequenceWindow()
        w.accept(1)
        w.requeue_acks([1])
        assert w.pending_acks == (1,)

    def test_prune_drops_numbers_server_forgot(self):
        w = SequenceWindow()
        for n in (1, 2, 3):
            w.accept(n)
        dropped = w.prune_acks((2, 3))
        assert dropped == [1]
        assert w.pending_acks == (2, 3)

    def test_prune_without_information_keeps_everything(self):
        w = SequenceWindow()
        w.accept(1)
        assert w.prune_acks(()) == []
        assert w.pending_acks == (1,)


class TestResetAndCopy:
    def test_reset_zeroes_window(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(5)
        w.reset()
        assert w.snapshot() == (0, (), ())

    def test_copy_is_independent(self):
        w = SequenceWindow()
        w.accept(1)
        w.accept(4)
        c = w.copy()
        c.accept(2)
        c.take_acks()
        assert w.snapshot() == (1, (4,), (1, 4))
        assert c.last_acked == 2
