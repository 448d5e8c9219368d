import time

import pytest

from paced_breathing import (
    BreathCycle,
    BreathingConfig,
    Cancelled,
    CancellationToken,
    PhaseTones,
    draw_bargraph,
    seconds_per_column,
)

from conftest import RecordingPlayer


def test_outline_is_drawn_before_filling(out):
    sleeps = []
    draw_bargraph("IN ", 0.05, 40, sleep=sleeps.append, out=out)

    outline = "IN  [" + " " * 40 + "]"
    assert out.getvalue() == outline + "\rIN  [" + "#" * 40 + "]\n"
    assert sleeps == [0.05] * 40


def test_bar_width_matches_outline_width(out):
    draw_bargraph("OUT", 0.1, 7, sleep=lambda s: None, out=out)
    outline, filled = out.getvalue().rstrip("\n").split("\r")
    assert len(outline) == len(filled)


def test_sleep_follows_each_fill_character():
    events = []

    class Recorder:
        def write(self, text):
            events.extend(("write", c) for c in text if c == "#")

        def flush(self):
            pass

    draw_bargraph("IN ", 0.2, 3, sleep=lambda s: events.append(("sleep", s)), out=Recorder())
    assert events == [("write", "#"), ("sleep", 0.2)] * 3


def test_phase_takes_about_its_configured_duration(out):
    delay = seconds_per_column(1, 20)
    start = time.monotonic()
    draw_bargraph("IN ", delay, 20, out=out)
    elapsed = time.monotonic() - start
    assert 1.0 <= elapsed < 1.5


def test_cycle_alternates_in_and_out_until_cancelled(cancel_after, out):
    columns = 4
    token = cancel_after(columns * 5)
    cycle = BreathCycle(BreathingConfig(columns=columns, enable_tone=False), token, out=out)

    with pytest.raises(Cancelled):
        cycle.run()

    lines = out.getvalue().split("\n")
    completed = [line.split("\r")[-1] for line in lines[:-1]]
    assert [line[:3] for line in completed] == ["IN ", "OUT", "IN ", "OUT"]
    assert lines[-1].endswith("\rIN  [####")
    assert token.sleeps == [0.5] * columns + [1.0] * columns + [0.5] * columns + [1.0] * columns + [0.5] * columns


def test_playback_starts_right_before_each_bar(cancel_after, out):
    events = []
    token = cancel_after(2 * 3, events=events)
    player = RecordingPlayer(events)
    tones = PhaseTones("/tmp/rising.wav", "/tmp/falling.wav")
    cycle = BreathCycle(BreathingConfig(columns=2), token, tones, player, out=out)

    with pytest.raises(Cancelled):
        cycle.run()

    assert player.played == ["/tmp/rising.wav", "/tmp/falling.wav", "/tmp/rising.wav"]
    assert [e[0] for e in events] == ["play", "sleep", "sleep"] * 3


def test_already_cancelled_token_draws_nothing(out):
    token = CancellationToken(sleep=lambda s: None)
    token.cancel()
    with pytest.raises(Cancelled):
        BreathCycle(BreathingConfig(enable_tone=False), token, out=out).run()
    assert out.getvalue() == ""
