# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command line entry point: ``retrieval-eval <command>``.
"""

import argparse
import logging
import os
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from . import __version__
from .config import parse_number_list, settings
from .errors import ConfigurationError, SetupError
from .experiments import ExperimentRunner, RunOutcome
from .inference import OllamaBackend
from .queries import QuerySet
from .storage import close_all_stores

logger = logging.getLogger(__name__)

EPILOG = """\
examples:
  retrieval-eval seed --size 1000
  retrieval-eval channels --extract-relations
  retrieval-eval rrf --scale 5
  retrieval-eval rrf --scales 120,1000,10000
  retrieval-eval rerank --no-threshold
  retrieval-eval sensitivity --scales 10,100,1000,10000

Models and the Ollama host are read from RETRIEVAL_EVAL_* environment
variables (or a .env file); OLLAMA_HOST is honoured as well.
"""

EXIT_SETUP_FAILURE = 1
EXIT_INTERRUPTED = 130


def _positive_int_list(value: str) -> List[int]:
    try:
        values = parse_number_list(value, int)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated integers, got {value!r}")
    if not values or any(v <= 0 for v in values):
        raise argparse.ArgumentTypeError(f"expected positive integers, got {value!r}")
    return values


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    verbosity = common.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Log warnings and errors only")
    common.add_argument("--results-dir", help="Output directory (default: RETRIEVAL_EVAL_RESULTS_DIR or ./results)")
    common.add_argument("--ground-truth", help="Query set TSV (default: the packaged query set)")
    common.add_argument("--ollama-host", help="Ollama base URL (default: OLLAMA_HOST or http://localhost:11434)")
    threshold = common.add_mutually_exclusive_group()
    threshold.add_argument("--threshold", type=float, help="Cosine distance cutoff for the vector channel")
    threshold.add_argument(
        "--no-threshold", action="store_true", help="Return the k nearest entries regardless of distance"
    )

    parser = argparse.ArgumentParser(
        prog="retrieval-eval",
        description="Retrieval quality evaluation over a synthetic, cluster-labeled corpus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", metavar="command", required=True)

    seed = commands.add_parser("seed", parents=[common], help="Build a corpus and write its cluster map")
    seed.add_argument("--scale", type=_positive_int, default=1, help="Paraphrase multiplier (default: 1)")
    seed.add_argument("--size", type=_positive_int, help="Fill the corpus to this many entries with background notes")

    channels = commands.add_parser("channels", parents=[common], help="Test each retrieval channel in isolation")
    channels.add_argument(
        "--extract-relations",
        action="store_true",
        help="Extract relations with the generation model instead of using the hand-authored ones",
    )

    for name, help_text in (
        ("rrf", "Compare union merge against reciprocal rank fusion"),
        ("rerank", "Compare fused rankings against cross-encoder reranking"),
    ):
        sub = commands.add_parser(name, parents=[common], help=help_text)
        sub.add_argument("--scale", type=_positive_int, default=1, help="Paraphrase multiplier (default: 1)")
        sub.add_argument(
            "--scales", type=_positive_int_list, help="Comma-separated corpus sizes, filled with background notes"
        )

    sensitivity = commands.add_parser(
        "sensitivity", parents=[common], help="Sweep distance thresholds across corpus scales"
    )
    sensitivity.add_argument("--scale", type=_positive_int, help="Single corpus size")
    sensitivity.add_argument(
        "--scales", type=_positive_int_list, help="Comma-separated corpus sizes (default: RETRIEVAL_EVAL_SCALES)"
    )
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if not args.verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def apply_overrides(args: argparse.Namespace) -> None:
    """Export command line overrides so the settings pick them up."""
    if args.ollama_host:
        os.environ["RETRIEVAL_EVAL_OLLAMA_HOST"] = args.ollama_host
    if args.results_dir:
        os.environ["RETRIEVAL_EVAL_RESULTS_DIR"] = args.results_dir
    if args.no_threshold:
        os.environ["RETRIEVAL_EVAL_VECTOR_THRESHOLD"] = "none"
    elif args.threshold is not None:
        os.environ["RETRIEVAL_EVAL_VECTOR_THRESHOLD"] = str(args.threshold)
    settings.reset()


def setup_signal_handlers() -> None:
    """Turn SIGTERM and SIGINT into KeyboardInterrupt so stores are closed on unwind."""

    def handle_shutdown(signum: int, frame) -> None:
        signal_name = signal.Signals(signum).name
        logger.warning(f"Received {signal_name}, cleaning up")
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)


def run_command(args: argparse.Namespace, runner: ExperimentRunner) -> RunOutcome:
    if args.command == "seed":
        return runner.run_seed(multiplier=args.scale, size=args.size)
    if args.command == "channels":
        return runner.run_channels(extract_relations=args.extract_relations)
    if args.command == "rrf":
        return runner.run_rrf(multiplier=args.scale, sizes=args.scales)
    if args.command == "rerank":
        return runner.run_rerank(multiplier=args.scale, sizes=args.scales)
    if args.command == "sensitivity":
        scales = args.scales or ([args.scale] if args.scale else None)
        return runner.run_sensitivity(scales)
    raise ConfigurationError(f"Unknown command: {args.command}")


def log_outcome(outcome: RunOutcome) -> None:
    logger.info(f"Results written to {outcome.results_dir}")
    logger.info(f"Summary: {outcome.summary_path}")
    if outcome.total_skipped:
        details = ", ".join(f"{name}={count}" for name, count in outcome.skipped.items() if count)
        logger.warning(f"Run completed with skips: {details}")
    if outcome.stability is not None:
        verdict = "demonstrated" if outcome.stability.demonstrates_instability else "not demonstrated"
        logger.info(f"Threshold instability across scales: {verdict}")


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for ``retrieval-eval``.

    Exits with code 1 on setup failures and 130 when interrupted; a run that
    completes with skipped items still exits 0.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args)
    setup_signal_handlers()

    try:
        apply_overrides(args)
        try:
            inference = settings.inference
            experiment = settings.experiment
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

        query_set = QuerySet.load(args.ground_truth)
        with OllamaBackend.from_settings(inference) as backend:
            backend.ping()
            runner = ExperimentRunner(settings, backend, query_set=query_set, results_dir=experiment.results_dir)
            runner.open_store().close()
            outcome = run_command(args, runner)
        log_outcome(outcome)
    except SetupError as e:
        logger.error(f"Setup failed: {e}")
        sys.exit(EXIT_SETUP_FAILURE)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        close_all_stores()
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(EXIT_SETUP_FAILURE)


if __name__ == "__main__":
    main()
