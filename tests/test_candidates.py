import pytest

from peerlink.rtc.candidates import CandidateBuffer


def test_fifo_drain():
    buf = CandidateBuffer()
    for n in (3, 1, 2):
        buf.append(n)

    assert list(buf) == [3, 1, 2]
    assert buf.drain() == [3, 1, 2]
    assert len(buf) == 0
    assert buf.drained


def test_drained_once_per_attempt():
    buf = CandidateBuffer()
    buf.append("a")
    buf.drain()

    with pytest.raises(RuntimeError):
        buf.drain()

    buf.reset()
    buf.append("b")
    assert buf.drain() == ["b"]


def test_clear_keeps_attempt_state():
    buf = CandidateBuffer()
    buf.append("a")
    buf.clear()

    assert len(buf) == 0
    assert not buf.drained
    assert buf.drain() == []
