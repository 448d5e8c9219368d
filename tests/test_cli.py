import json
import subprocess

import pytest

from paced_breathing import (
    BreathingConfig,
    ConfigManager,
    build_cli_parser,
    config_from_args,
    main,
    run_cli,
)


def parse(*argv):
    return build_cli_parser().parse_args(list(argv))


def test_defaults_match_config_defaults():
    assert config_from_args(parse()) == BreathingConfig()


def test_every_option_reaches_the_config(tmp_path):
    config = config_from_args(parse(
        "--inhale", "4", "--exhale", "6", "--columns", "60", "--no-tone",
        "--latency", "150", "--tone-high", "400", "--tone-low", "100",
        "--fade-in", "0.2", "--sample-rate", "48000", "--synth", "sox",
        "--player", "paplay", "--asset-dir", str(tmp_path),
    ))
    assert config == BreathingConfig(
        inhale_seconds=4, exhale_seconds=6, columns=60, enable_tone=False,
        tone_latency_ms=150, tone_high_hz=400.0, tone_low_hz=100.0,
        fade_in_seconds=0.2, sample_rate=48000, synth_backend="sox",
        player_command="paplay", asset_directory=str(tmp_path),
    )


def test_cancelled_session_exits_cleanly(cancel_after, capsys):
    status = run_cli(parse("--no-tone", "--columns", "4"), token=cancel_after(6))
    assert status == 0
    assert capsys.readouterr().out.startswith("IN  [    ]\rIN  [####]\nOUT [")


def test_invalid_options_exit_with_status_1(caplog):
    assert run_cli(parse("--inhale", "0")) == 1
    assert "Validation error" in caplog.text


def test_main_exits_with_status(caplog):
    with pytest.raises(SystemExit) as exc:
        main(["--columns", "1"])
    assert exc.value.code == 1


def test_missing_synthesizer_exits_with_status_1(tmp_path, monkeypatch, cancel_after, caplog):
    def run(args, **kw):
        raise FileNotFoundError(args[0])
    monkeypatch.setattr(subprocess, "run", run)

    status = run_cli(parse("--synth", "sox", "--asset-dir", str(tmp_path)), token=cancel_after(1))

    assert status == 1
    assert "Tone generation failed" in caplog.text


def test_save_and_load_config(tmp_path, cancel_after):
    path = str(tmp_path / "slow.json")
    run_cli(parse("--no-tone", "--inhale", "5", "--save-config", path), token=cancel_after(1))

    with open(path) as f:
        assert json.load(f)["inhale_seconds"] == 5
    assert ConfigManager.load(path).inhale_seconds == 5
    assert config_from_args(parse("--load-config", path)).enable_tone is False


def test_missing_config_file_exits_with_status_1(tmp_path, caplog):
    assert run_cli(parse("--load-config", str(tmp_path / "nope.json"))) == 1
    assert "Could not load configuration" in caplog.text


def test_malformed_config_file_exits_with_status_1(tmp_path, caplog):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    assert run_cli(parse("--load-config", str(path))) == 1
    assert "Could not load configuration" in caplog.text
