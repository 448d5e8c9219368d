import io

import pytest

from paced_breathing import CancellationToken


class RecordingPlayer:
    def __init__(self, events=None):
        self.played = []
        self.events = events if events is not None else []

    def play(self, path):
        self.played.append(path)
        self.events.append(("play", path))


class FileWritingSynthesizer:
    """Stands in for the real synthesizer; writes a small placeholder file."""

    def __init__(self, fail_on_call=None):
        self.calls = []
        self.fail_on_call = fail_on_call

    def synthesize(self, duration_seconds, start_hz, end_hz, path):
        self.calls.append((duration_seconds, start_hz, end_hz, path))
        with open(path, "wb") as f:
            f.write(b"RIFF")
        if self.fail_on_call == len(self.calls):
            from paced_breathing import ExternalToolFailure
            raise ExternalToolFailure("synth exploded")
        return path


@pytest.fixture
def cancel_after():
    """Build a token whose fake sleep cancels it after `n` sleeps."""
    def factory(n, events=None):
        calls = []

        def fake_sleep(seconds):
            calls.append(seconds)
            if events is not None:
                events.append(("sleep", seconds))
            if len(calls) >= n:
                token.cancel()

        token = CancellationToken(sleep=fake_sleep)
        token.sleeps = calls
        return token
    return factory


@pytest.fixture
def out():
    return io.StringIO()
