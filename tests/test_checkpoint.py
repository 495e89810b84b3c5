import pytest

from quillswitch.services.checkpoint import CheckpointTracker


def test_cursor_only_advances_past_contiguous_batches():
    tracker = CheckpointTracker()
    sequences = [tracker.assign() for _ in range(4)]

    assert not tracker.complete(sequences[2], "30")
    assert not tracker.complete(sequences[1], "20")
    assert tracker.committed_cursor is None

    assert tracker.complete(sequences[0], "10")
    assert tracker.committed_cursor == "30"
    assert tracker.outstanding == 1

    assert tracker.complete(sequences[3], "40")
    assert tracker.committed_cursor == "40"
    assert tracker.outstanding == 0


def test_resumes_from_start_cursor():
    tracker = CheckpointTracker("40")

    assert tracker.committed_cursor == "40"
    sequence = tracker.assign()
    tracker.complete(sequence, "50")
    assert tracker.committed_cursor == "50"


def test_rejects_unknown_or_repeated_batches():
    tracker = CheckpointTracker()
    sequence = tracker.assign()

    with pytest.raises(ValueError):
        tracker.complete(sequence + 1, "x")

    tracker.complete(sequence, "10")
    with pytest.raises(ValueError):
        tracker.complete(sequence, "10")
