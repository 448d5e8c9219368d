"""
Paced Breathing - Terminal Breath Pacer
=======================================
Paces inhalation and exhalation with a bar-graph that fills across the
terminal, optionally accompanied by a tone whose pitch rises while breathing
in and falls while breathing out. Runs until interrupted, then removes the
audio files it generated.

Dependencies: numpy, scipy
Optional: sox (alternative tone synthesizer), aplay (tone playback)

Usage:
    python paced_breathing.py                         # 2s in, 4s out, with tones
    python paced_breathing.py --inhale 4 --exhale 6   # slower breathing
    python paced_breathing.py --no-tone --columns 60  # silent, wider bar
"""

import os
import sys
import json
import time
import signal
import logging
import argparse
import tempfile
import itertools
import threading
import subprocess
import contextlib
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, List, Callable, Iterator, TextIO
from enum import Enum

import numpy as np
from scipy.io import wavfile

# ============================================================
# LOGGING SETUP
# ============================================================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("PacedBreathing")


# ============================================================
# ERRORS
# ============================================================

class PacedBreathingError(Exception):
    """Base class for all paced-breathing errors."""


class ConfigurationError(PacedBreathingError, ValueError):
    """A phase duration, column count or tone option is invalid."""


class DivisionByZero(PacedBreathingError, ZeroDivisionError):
    """Fixed-point division was asked to divide by zero."""


class ExternalToolFailure(PacedBreathingError, RuntimeError):
    """The tone synthesizer or player could not be run."""


class CleanupFailure(PacedBreathingError, OSError):
    """A transient asset could not be removed."""


class Cancelled(PacedBreathingError):
    """The breathing session was cancelled from outside."""


# ============================================================
# DATA MODELS & ENUMERATIONS
# ============================================================

class Phase(Enum):
    """The two halves of a breath cycle, valued by their caption."""
    INHALE = "IN "
    EXHALE = "OUT"

    @property
    def caption(self) -> str:
        return self.value


class SynthBackend(Enum):
    """Supported tone synthesizers."""
    NUMPY = "numpy"
    SOX = "sox"


SUPPORTED_SAMPLE_RATES = (8000, 22050, 44100, 48000)
FRACTION_DIGITS = 5


@dataclass(frozen=True)
class BreathingConfig:
    """Complete, immutable configuration for one breathing session."""
    inhale_seconds: int = 2
    exhale_seconds: int = 4
    columns: int = 40
    enable_tone: bool = True
    tone_latency_ms: int = 200
    tone_high_hz: float = 300.0
    tone_low_hz: float = 150.0
    fade_in_seconds: float = 0.1
    sample_rate: int = 44100
    synth_backend: str = "numpy"
    player_command: str = "aplay"
    asset_directory: str = field(default_factory=tempfile.gettempdir)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BreathingConfig":
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)

    @property
    def inhale_ms(self) -> int:
        return self.inhale_seconds * 1000

    @property
    def exhale_ms(self) -> int:
        return self.exhale_seconds * 1000

    def validate(self) -> List[str]:
        """Validate configuration and return list of error messages."""
        errors = []
        for name in ("inhale_seconds", "exhale_seconds"):
            value = getattr(self, name)
            if not _is_whole(value) or value <= 0:
                errors.append(f"{name} must be a whole number of seconds greater than 0 (got {value!r}).")
        if not _is_whole(self.columns) or self.columns < 2:
            errors.append(f"columns must be a whole number of at least 2 (got {self.columns!r}).")
        if not _is_whole(self.tone_latency_ms) or self.tone_latency_ms < 0:
            errors.append(f"tone_latency_ms must be a whole number >= 0 (got {self.tone_latency_ms!r}).")
        if self.tone_high_hz <= 0 or self.tone_low_hz <= 0:
            errors.append("Tone frequencies must be greater than 0 Hz.")
        if self.fade_in_seconds < 0:
            errors.append("Fade-in must be >= 0 seconds.")
        if self.sample_rate not in SUPPORTED_SAMPLE_RATES:
            errors.append(f"Sample rate must be one of {', '.join(map(str, SUPPORTED_SAMPLE_RATES))}.")
        if self.synth_backend not in [b.value for b in SynthBackend]:
            errors.append(f"Invalid synth backend: {self.synth_backend}")
        if self.enable_tone and not errors:
            shortest_ms = min(self.inhale_ms, self.exhale_ms)
            if self.tone_latency_ms >= shortest_ms:
                errors.append(
                    f"tone_latency_ms ({self.tone_latency_ms}) must be shorter than "
                    f"the shortest phase ({shortest_ms} ms)."
                )
        return errors

    def ensure_valid(self) -> "BreathingConfig":
        errors = self.validate()
        if errors:
            raise ConfigurationError("Configuration errors:\n" + "\n".join(errors))
        return self


def _is_whole(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ============================================================
# FIXED-POINT ARITHMETIC & PHASE SCHEDULING
# ============================================================

def fixed_point_divide(numerator: int, denominator: int, digits: int = FRACTION_DIGITS) -> str:
    """
    Divide two non-negative integers using integer arithmetic only.

    The numerator is scaled by 10**digits before an integer division, so the
    result is truncated (never rounded) to exactly `digits` fractional digits:
    fixed_point_divide(10, 4) == "2.50000", fixed_point_divide(1, 3) == "0.33333".
    """
    if numerator < 0 or denominator < 0:
        raise ValueError("fixed_point_divide only handles non-negative integers")
    if denominator == 0:
        raise DivisionByZero(f"cannot divide {numerator} by zero")
    if digits < 1:
        raise ValueError("digits must be at least 1")
    scale = 10 ** digits
    scaled = numerator * scale // denominator
    whole, fraction = divmod(scaled, scale)
    return f"{whole}.{fraction:0{digits}d}"


def seconds_per_column(duration_seconds: int, columns: int) -> float:
    """
    Delay between successive fill characters for one phase.

    The phase is spread evenly over the columns; the truncation error is at
    most 10**-5 s per column and is not corrected afterwards.
    """
    return float(fixed_point_divide(duration_seconds * 1000, columns * 1000))


# ============================================================
# AUDIO GENERATION ENGINE
# ============================================================

class AudioEngine:
    """
    Stateless DSP helpers for the breathing tones.
    All methods operate on numpy arrays.
    """

    @staticmethod
    def generate_sweep(start_hz: float, end_hz: float, duration: float, sample_rate: int) -> np.ndarray:
        """
        Generate a sine whose frequency moves linearly from start_hz to end_hz.
        phase(t) = 2π × (f0·t + (f1 - f0)·t² / 2T)
        """
        t = np.linspace(0, duration, int(sample_rate * duration), endpoint=False)
        sweep_rate = (end_hz - start_hz) / duration
        return np.sin(2.0 * np.pi * (start_hz * t + 0.5 * sweep_rate * t * t))

    @staticmethod
    def apply_fade_in(audio: np.ndarray, fade_duration: float, sample_rate: int) -> np.ndarray:
        """Raised-cosine (Hann) fade-in to avoid a click at the start."""
        fade_samples = min(int(fade_duration * sample_rate), len(audio))
        if fade_samples == 0:
            return audio
        audio = audio.copy()
        audio[:fade_samples] *= 0.5 * (1.0 - np.cos(np.linspace(0, np.pi, fade_samples)))
        return audio

    @staticmethod
    def apply_limiter(audio: np.ndarray, threshold: float = 0.95) -> np.ndarray:
        """Soft limiter using tanh to prevent distortion."""
        return threshold * np.tanh(audio / threshold)

    @staticmethod
    def to_16bit_pcm(audio: np.ndarray) -> np.ndarray:
        """Convert float audio [-1,1] to 16-bit PCM integers."""
        audio_clipped = np.clip(audio, -1.0, 1.0)
        return (audio_clipped * 32767).astype(np.int16)


class NumpySweepSynthesizer:
    """Writes pitch sweeps as 16-bit mono WAV files using numpy and scipy."""

    def __init__(self, sample_rate: int = 44100, fade_in_seconds: float = 0.1):
        self.sample_rate = sample_rate
        self.fade_in_seconds = fade_in_seconds
        self.engine = AudioEngine()

    def synthesize(self, duration_seconds: float, start_hz: float, end_hz: float, path: str) -> str:
        logger.debug(f"Synthesizing {duration_seconds}s sweep {start_hz}->{end_hz} Hz into {path}")
        audio = self.engine.generate_sweep(start_hz, end_hz, duration_seconds, self.sample_rate)
        audio = self.engine.apply_limiter(audio)
        audio = self.engine.apply_fade_in(audio, self.fade_in_seconds, self.sample_rate)
        try:
            wavfile.write(path, self.sample_rate, self.engine.to_16bit_pcm(audio))
        except OSError as e:
            raise ExternalToolFailure(f"Could not write tone file {path}: {e}") from e
        return path


class SoxSynthesizer:
    """Generates pitch sweeps by running `sox ... synth`."""

    def __init__(self, fade_in_seconds: float = 0.1, command: str = "sox"):
        self.fade_in_seconds = fade_in_seconds
        self.command = command

    def synthesize(self, duration_seconds: float, start_hz: float, end_hz: float, path: str) -> str:
        args = [
            self.command, "-n", path,
            "synth", str(duration_seconds), "sine", f"{start_hz:g}:{end_hz:g}",
            "fade", str(self.fade_in_seconds), "0",
        ]
        logger.debug(f"Running: {' '.join(args)}")
        try:
            subprocess.run(args, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise ExternalToolFailure(f"{self.command} is not installed") from e
        except subprocess.CalledProcessError as e:
            raise ExternalToolFailure(f"{self.command} failed: {e.stderr.strip()}") from e
        return path


def build_synthesizer(config: BreathingConfig):
    backend = SynthBackend(config.synth_backend)
    if backend == SynthBackend.SOX:
        return SoxSynthesizer(config.fade_in_seconds)
    return NumpySweepSynthesizer(config.sample_rate, config.fade_in_seconds)


class CommandPlayer:
    """
    Plays an audio file with an external command, fire-and-forget.

    The child is never waited on and its output is discarded. A player that
    cannot be launched is ignored so the visual pacing carries on.
    """

    def __init__(self, command: str = "aplay"):
        self.command = command

    def play(self, path: str) -> None:
        try:
            subprocess.Popen(
                [self.command, path],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.debug(f"Playback of {path} with {self.command} failed: {e}")


# ============================================================
# TRANSIENT ASSETS & CANCELLATION
# ============================================================

def remove_asset(path: str) -> bool:
    """Delete a file if it exists. Returns True if something was removed."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise CleanupFailure(f"Could not remove {path}: {e}") from e
    return True


@contextlib.contextmanager
def signals_ignored(signums=(signal.SIGINT, signal.SIGTERM)):
    """Ignore the given signals for the duration of the block (main thread only)."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = {signum: signal.signal(signum, signal.SIG_IGN) for signum in signums}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class TransientAssets:
    """
    Registry of files owned by this run.

    Files are registered before they are created and removed when the
    context exits, however it exits. release() forgets each path once its
    removal has been attempted, so every file is deleted at most once.
    Interrupts are ignored while releasing.
    """

    def __init__(self):
        self._paths: List[str] = []

    @property
    def paths(self) -> List[str]:
        return list(self._paths)

    def register(self, path: str) -> str:
        if path not in self._paths:
            self._paths.append(path)
        return path

    def release(self) -> int:
        removed = 0
        with signals_ignored():
            while self._paths:
                path = self._paths[0]
                try:
                    if remove_asset(path):
                        removed += 1
                        logger.debug(f"Removed {path}")
                except CleanupFailure as e:
                    logger.warning(str(e))
                finally:
                    self._paths.pop(0)
        return removed

    def __enter__(self) -> "TransientAssets":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class CancellationToken:
    """Cooperative cancellation flag with a cancellable sleep."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()

    def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        self._sleep(seconds)
        self.raise_if_cancelled()


class InterruptHandler:
    """
    Turns SIGINT/SIGTERM into cancellation of a token.

    The handler raises Cancelled straight away, so a sleep or a tone
    synthesis in progress is abandoned and the surrounding context managers
    run their cleanup. Previous handlers are restored on exit.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, token: CancellationToken):
        self.token = token
        self._previous: Dict[int, object] = {}

    def _handle(self, signum, frame) -> None:
        logger.debug(f"Received signal {signum}, cancelling")
        self.token.cancel()
        raise Cancelled()

    def __enter__(self) -> "InterruptHandler":
        for signum in self.SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()


# ============================================================
# TONE PREPARATION
# ============================================================

@dataclass(frozen=True)
class PhaseTones:
    """Paths of the rising (inhale) and falling (exhale) tone files."""
    rising: str
    falling: str


def tone_duration_seconds(phase_ms: int, latency_ms: int) -> float:
    """Tones are a little shorter than their phase so playbacks do not overlap."""
    return float(fixed_point_divide(phase_ms - latency_ms, 1000))


def prepare_tones(config: BreathingConfig, synthesizer, assets: TransientAssets) -> PhaseTones:
    """Generate both sweeps once; they are replayed on every cycle."""
    pid = os.getpid()
    rising = assets.register(os.path.join(config.asset_directory, f"rising_{pid}.wav"))
    falling = assets.register(os.path.join(config.asset_directory, f"falling_{pid}.wav"))

    synthesizer.synthesize(
        tone_duration_seconds(config.inhale_ms, config.tone_latency_ms),
        config.tone_low_hz, config.tone_high_hz, rising,
    )
    synthesizer.synthesize(
        tone_duration_seconds(config.exhale_ms, config.tone_latency_ms),
        config.tone_high_hz, config.tone_low_hz, falling,
    )
    logger.info(f"Tones ready: {rising}, {falling}")
    return PhaseTones(rising, falling)


# ============================================================
# BAR-GRAPH RENDERING
# ============================================================

FILL_CHAR = "#"


def draw_bargraph(
    caption: str, delay: float, columns: int,
    sleep: Callable[[float], None] = time.sleep,
    out: Optional[TextIO] = None,
) -> None:
    """
    Draw one phase as `caption [#####   ]`, one fill character per delay.

    The empty outline goes out first so the line width never changes, then a
    carriage return brings the cursor back to overwrite it without erasing
    the closing bracket.
    """
    out = out or sys.stdout
    out.write(f"{caption} [{' ' * columns}]\r{caption} [")
    out.flush()
    for _ in range(columns):
        out.write(FILL_CHAR)
        out.flush()
        sleep(delay)
    out.write("]\n")
    out.flush()


# ============================================================
# BREATH CYCLE DRIVER
# ============================================================

@dataclass(frozen=True)
class PhasePlan:
    """Everything needed to run one phase, computed once at startup."""
    phase: Phase
    delay: float
    tone: Optional[str] = None

    @property
    def caption(self) -> str:
        return self.phase.caption


def plan_phases(config: BreathingConfig, tones: Optional[PhaseTones] = None) -> List[PhasePlan]:
    return [
        PhasePlan(Phase.INHALE, seconds_per_column(config.inhale_seconds, config.columns),
                  tones.rising if tones else None),
        PhasePlan(Phase.EXHALE, seconds_per_column(config.exhale_seconds, config.columns),
                  tones.falling if tones else None),
    ]


class BreathCycle:
    """
    Alternates INHALE and EXHALE bars forever.

    There is no internal stop condition: run() only ends when the token is
    cancelled, which surfaces as Cancelled.
    """

    def __init__(
        self, config: BreathingConfig, token: CancellationToken,
        tones: Optional[PhaseTones] = None, player=None,
        out: Optional[TextIO] = None,
    ):
        self.config = config
        self.token = token
        self.player = player
        self.out = out
        self.plans = plan_phases(config, tones)

    def phases(self) -> Iterator[PhasePlan]:
        return itertools.cycle(self.plans)

    def run_phase(self, plan: PhasePlan) -> None:
        self.token.raise_if_cancelled()
        if plan.tone and self.player is not None:
            self.player.play(plan.tone)
        draw_bargraph(plan.caption, plan.delay, self.config.columns,
                      sleep=self.token.sleep, out=self.out)

    def run(self) -> None:
        for plan in self.phases():
            self.run_phase(plan)


# ============================================================
# CONFIGURATION PERSISTENCE
# ============================================================

class ConfigManager:
    """Save and load breathing configurations as JSON."""
    DEFAULT_PATH = "paced_breathing.json"

    @staticmethod
    def save(config: BreathingConfig, filepath: str = None) -> str:
        filepath = filepath or ConfigManager.DEFAULT_PATH
        with open(filepath, "w") as f:
            json.dump(config.to_dict(), f, indent=2)
        logger.info(f"Configuration saved to {filepath}")
        return filepath

    @staticmethod
    def load(filepath: str = None) -> BreathingConfig:
        filepath = filepath or ConfigManager.DEFAULT_PATH
        with open(filepath, "r") as f:
            data = json.load(f)
        config = BreathingConfig.from_dict(data)
        logger.info(f"Configuration loaded from {filepath}")
        return config


# ============================================================
# SESSION
# ============================================================

def run_session(
    config: BreathingConfig, token: CancellationToken,
    synthesizer=None, player=None, out: Optional[TextIO] = None,
) -> None:
    """
    Prepare tones and breathe until cancelled.

    Generated files are removed on the way out whether the session ends by
    cancellation or by a startup failure.
    """
    config.ensure_valid()
    with TransientAssets() as assets, InterruptHandler(token):
        tones = None
        if config.enable_tone:
            synthesizer = synthesizer or build_synthesizer(config)
            player = player or CommandPlayer(config.player_command)
            tones = prepare_tones(config, synthesizer, assets)
        BreathCycle(config, token, tones, player, out).run()


# ============================================================
# COMMAND LINE INTERFACE
# ============================================================

def build_cli_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    defaults = BreathingConfig()
    parser = argparse.ArgumentParser(
        description="Paced breathing bar-graph for the terminal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python paced_breathing.py
  python paced_breathing.py --inhale 4 --exhale 6 --columns 60
  python paced_breathing.py --synth sox --tone-low 120 --tone-high 240
  python paced_breathing.py --no-tone --save-config slow.json
        """,
    )
    parser.add_argument("--inhale", "-i", type=int, default=defaults.inhale_seconds,
                        help="Seconds to breathe in (whole number)")
    parser.add_argument("--exhale", "-e", type=int, default=defaults.exhale_seconds,
                        help="Seconds to breathe out (whole number)")
    parser.add_argument("--columns", "-c", type=int, default=defaults.columns,
                        help="Width of the bar-graph in terminal columns")
    parser.add_argument("--no-tone", action="store_true", help="Disable rising/falling tones")
    parser.add_argument("--latency", type=int, default=defaults.tone_latency_ms,
                        help="Milliseconds by which each tone is shorter than its phase")
    parser.add_argument("--tone-high", type=float, default=defaults.tone_high_hz)
    parser.add_argument("--tone-low", type=float, default=defaults.tone_low_hz)
    parser.add_argument("--fade-in", type=float, default=defaults.fade_in_seconds)
    parser.add_argument("--sample-rate", type=int, choices=SUPPORTED_SAMPLE_RATES,
                        default=defaults.sample_rate)
    parser.add_argument("--synth", choices=[b.value for b in SynthBackend],
                        default=defaults.synth_backend)
    parser.add_argument("--player", type=str, default=defaults.player_command)
    parser.add_argument("--asset-dir", type=str, default=defaults.asset_directory)
    parser.add_argument("--save-config", type=str, default=None)
    parser.add_argument("--load-config", type=str, default=None)
    parser.add_argument("--verbose", action="store_true")
    return parser


def config_from_args(args) -> BreathingConfig:
    if args.load_config:
        return ConfigManager.load(args.load_config)
    return BreathingConfig(
        inhale_seconds=args.inhale, exhale_seconds=args.exhale,
        columns=args.columns, enable_tone=not args.no_tone,
        tone_latency_ms=args.latency, tone_high_hz=args.tone_high,
        tone_low_hz=args.tone_low, fade_in_seconds=args.fade_in,
        sample_rate=args.sample_rate, synth_backend=args.synth,
        player_command=args.player, asset_directory=args.asset_dir,
    )


def log_banner(config: BreathingConfig) -> None:
    logger.info("=" * 60)
    logger.info("PACED BREATHING")
    logger.info("=" * 60)
    logger.info(f"In: {config.inhale_seconds}s   Out: {config.exhale_seconds}s   Columns: {config.columns}")
    if config.enable_tone:
        logger.info(f"Tones: {config.tone_low_hz:g} <-> {config.tone_high_hz:g} Hz "
                    f"({config.synth_backend}, latency {config.tone_latency_ms} ms, player {config.player_command})")
    else:
        logger.info("Tones: off")
    logger.info("Press Ctrl-C to stop.")
    logger.info("-" * 60)


def run_cli(args, token: Optional[CancellationToken] = None) -> int:
    """Execute the CLI. Returns the process exit status."""
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        config = config_from_args(args)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Could not load configuration: {e}")
        return 1

    errors = config.validate()
    if errors:
        for err in errors:
            logger.error(f"Validation error: {err}")
        return 1

    if args.save_config:
        ConfigManager.save(config, args.save_config)

    log_banner(config)
    token = token or CancellationToken()
    try:
        run_session(config, token)
    except Cancelled:
        return 0
    except ExternalToolFailure as e:
        logger.error(f"Tone generation failed: {e}")
        return 1
    return 0


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = build_cli_parser()
    args = parser.parse_args(argv)
    sys.exit(run_cli(args))


if __name__ == "__main__":
    main()
