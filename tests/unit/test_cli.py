"""
Unit tests for command line parsing and exit codes.
"""

import os
from unittest.mock import MagicMock, patch

import pytest

from retrieval_eval import cli
from retrieval_eval.config import settings
from retrieval_eval.errors import InferenceUnavailableError, StoreUnavailableError
from retrieval_eval.experiments import RunOutcome


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Overrides are exported to os.environ; restore it after every test."""
    monkeypatch.setattr(cli, "setup_signal_handlers", lambda: None)
    with patch.dict(os.environ):
        for name in ("RETRIEVAL_EVAL_OLLAMA_HOST", "RETRIEVAL_EVAL_RESULTS_DIR", "RETRIEVAL_EVAL_VECTOR_THRESHOLD"):
            os.environ.pop(name, None)
        settings.reset()
        yield
    settings.reset()


class TestParser:
    def test_rrf_scales(self):
        args = cli.build_parser().parse_args(["rrf", "--scales", "120,1000"])
        assert args.command == "rrf"
        assert args.scales == [120, 1000]
        assert args.scale == 1

    def test_common_options_after_command(self):
        args = cli.build_parser().parse_args(
            ["rerank", "--results-dir", "out", "--ollama-host", "http://gpu:11434", "--no-threshold", "-v"]
        )
        assert args.results_dir == "out"
        assert args.ollama_host == "http://gpu:11434"
        assert args.no_threshold
        assert args.verbose

    def test_threshold_and_no_threshold_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["rrf", "--threshold", "0.4", "--no-threshold"])

    def test_invalid_scales(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["sensitivity", "--scales", "10,-1"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_channels_flag(self):
        assert cli.build_parser().parse_args(["channels", "--extract-relations"]).extract_relations


class TestOverrides:
    def test_exported_to_settings(self, tmp_path):
        args = cli.build_parser().parse_args(
            ["rrf", "--results-dir", str(tmp_path), "--ollama-host", "http://gpu:11434", "--threshold", "0.42"]
        )

        cli.apply_overrides(args)

        assert settings.inference.ollama_host == "http://gpu:11434"
        assert settings.experiment.results_dir == str(tmp_path)
        assert settings.experiment.vector_threshold == pytest.approx(0.42)

    def test_no_threshold(self):
        cli.apply_overrides(cli.build_parser().parse_args(["rrf", "--no-threshold"]))
        assert settings.experiment.vector_threshold is None


class TestMain:
    def test_unreachable_inference_exits_1(self):
        with patch.object(cli.OllamaBackend, "ping", side_effect=InferenceUnavailableError("down")):
            with pytest.raises(SystemExit) as exc:
                cli.main(["seed"])
        assert exc.value.code == 1

    def test_missing_ground_truth_exits_1(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            cli.main(["rrf", "--ground-truth", str(tmp_path / "missing.tsv")])
        assert exc.value.code == 1

    def test_store_unavailable_exits_1(self):
        with patch.object(cli.OllamaBackend, "ping"), patch.object(
            cli.ExperimentRunner, "open_store", side_effect=StoreUnavailableError("no sqlite-vec")
        ):
            with pytest.raises(SystemExit) as exc:
                cli.main(["channels"])
        assert exc.value.code == 1

    def test_interrupt_exits_130(self):
        with patch.object(cli.OllamaBackend, "ping"), patch.object(cli.ExperimentRunner, "open_store"), patch.object(
            cli, "run_command", side_effect=KeyboardInterrupt
        ):
            with pytest.raises(SystemExit) as exc:
                cli.main(["rrf"])
        assert exc.value.code == 130

    def test_completed_run_returns_normally(self, tmp_path):
        outcome = RunOutcome(tmp_path, tmp_path / "summary.md", skipped={"failed rerank calls": 2})
        run_command = MagicMock(return_value=outcome)
        with patch.object(cli.OllamaBackend, "ping"), patch.object(cli.ExperimentRunner, "open_store"), patch.object(
            cli, "run_command", run_command
        ):
            cli.main(["rerank", "--scale", "5", "--results-dir", str(tmp_path)])

        args, runner = run_command.call_args.args
        assert args.command == "rerank"
        assert args.scale == 5
        assert runner.results_dir == tmp_path


class TestRunCommand:
    @pytest.mark.parametrize(
        "argv, method, kwargs",
        [
            (["seed", "--scale", "3", "--size", "500"], "run_seed", {"multiplier": 3, "size": 500}),
            (["channels"], "run_channels", {"extract_relations": False}),
            (["rrf", "--scales", "120,1000"], "run_rrf", {"multiplier": 1, "sizes": [120, 1000]}),
            (["rerank", "--scale", "10"], "run_rerank", {"multiplier": 10, "sizes": None}),
        ],
    )
    def test_dispatch(self, argv, method, kwargs):
        runner = MagicMock()
        cli.run_command(cli.build_parser().parse_args(argv), runner)
        getattr(runner, method).assert_called_once_with(**kwargs)

    def test_sensitivity_single_scale(self):
        runner = MagicMock()
        cli.run_command(cli.build_parser().parse_args(["sensitivity", "--scale", "100"]), runner)
        runner.run_sensitivity.assert_called_once_with([100])

    def test_sensitivity_default_scales(self):
        runner = MagicMock()
        cli.run_command(cli.build_parser().parse_args(["sensitivity"]), runner)
        runner.run_sensitivity.assert_called_once_with(None)
