"""
CLI for the codejudge sandboxed execution service.
"""
import argparse
import json
import logging
import sys
from typing import Any, Dict, Optional

import uvicorn

from codejudge.config.defaults import (
    CONTROLLER_DEFAULTS,
    POOL_DEFAULTS,
    SCHEDULER_DEFAULTS,
    SERVER_DEFAULTS,
)
from codejudge.config.logging import setup_logging
from codejudge.config.settings import JudgeConfig
from codejudge.exceptions import CodeJudgeError

logger = logging.getLogger(__name__)

LIMIT_FLAGS = ("cpu_ms", "wall_ms", "memory_bytes", "max_processes", "max_output_bytes", "max_file_bytes")

# Exit codes for one-shot runs
EXIT_OK = 0
EXIT_USER_FAILURE = 1
EXIT_SERVICE_FAILURE = 2


def _config_from_args(args: argparse.Namespace) -> JudgeConfig:
    backend_options: Dict[str, Any] = {}
    if args.backend == "docker" and getattr(args, "docker_user", None):
        backend_options["user"] = args.docker_user
    return JudgeConfig(
        backend=args.backend,
        max_instances=args.max_instances,
        acquire_timeout=args.acquire_timeout,
        reuse_instances=not args.no_reuse,
        queue_depth=args.queue_depth,
        max_provision_attempts=args.max_provision_attempts,
        compile_wall_ms=args.compile_wall_ms,
        supervisor_grace_ms=args.supervisor_grace_ms,
        backend_options=backend_options,
    )


def _limits_from_args(args: argparse.Namespace) -> Optional[Dict[str, int]]:
    limits = {name: getattr(args, name) for name in LIMIT_FLAGS if getattr(args, name, None) is not None}
    return limits or None


def _read_source(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _read_stdin_arg(args: argparse.Namespace) -> str:
    if args.stdin_file:
        with open(args.stdin_file, "r", encoding="utf-8") as f:
            return f.read()
    return args.input or ""


def _print_result(result: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(result, indent=2))
        return
    if result.get("compile_log"):
        sys.stderr.write(result["compile_log"])
    sys.stdout.write(result.get("stdout", ""))
    sys.stderr.write(result.get("stderr", ""))
    summary = (
        f"[{result['outcome']}] exit={result.get('exit_code')} "
        f"time={result.get('duration_ms')}ms memory={result.get('memory_peak_bytes')}B"
    )
    if result.get("message"):
        summary = f"{summary} ({result['message']})"
    print(summary, file=sys.stderr)


def _exit_code(result: Dict[str, Any]) -> int:
    if result["outcome"] == "success":
        return EXIT_OK
    return EXIT_USER_FAILURE if result.get("user_outcome") else EXIT_SERVICE_FAILURE


def serve(args: argparse.Namespace) -> None:
    from codejudge.api.server import create_app

    app = create_app(
        config=_config_from_args(args),
        metrics_enabled=not args.no_metrics,
        metrics_exporter=args.metrics_exporter,
        metrics_endpoint=args.metrics_endpoint,
    )
    if not args.no_metrics:
        if args.metrics_exporter == "prometheus":
            logger.info("OpenTelemetry metrics enabled (Prometheus exporter at /metrics)")
        else:
            logger.info(f"OpenTelemetry metrics enabled ({args.metrics_exporter} exporter)")
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


def run_local(args: argparse.Namespace) -> int:
    from codejudge.core.orchestrator import Orchestrator

    orchestrator = Orchestrator(_config_from_args(args))
    orchestrator.initialize()
    try:
        result = orchestrator.execute(
            args.language,
            _read_source(args.file),
            _read_stdin_arg(args),
            _limits_from_args(args),
        )
    finally:
        orchestrator.cleanup()
    payload = result.to_dict()
    _print_result(payload, args.json)
    return _exit_code(payload)


def submit_remote(args: argparse.Namespace) -> int:
    from codejudge.client import JudgeClient

    client = JudgeClient(args.server, timeout=args.timeout)
    payload = client.execute(
        args.language,
        _read_source(args.file),
        _read_stdin_arg(args),
        _limits_from_args(args),
    )
    _print_result(payload, args.json)
    return _exit_code(payload)


def list_languages(args: argparse.Namespace) -> int:
    if args.server:
        from codejudge.client import JudgeClient
        languages = JudgeClient(args.server).languages()
    else:
        from codejudge.core.limits import default_limit_policy
        from codejudge.runtime.registry import get_runtime_registry

        policy = default_limit_policy()
        languages = []
        for image in get_runtime_registry().list_images():
            info = image.to_dict()
            info["default_limits"] = policy.defaults_for(image.language).to_dict()
            languages.append(info)

    if args.json:
        print(json.dumps(languages, indent=2))
        return EXIT_OK
    for info in languages:
        aliases = ", ".join(info["aliases"])
        kind = "compiled" if info["compiled"] else "interpreted"
        line = f"{info['language']:<12} {kind:<12} {info['image']}"
        if aliases:
            line = f"{line}  (aliases: {aliases})"
        print(line)
    return EXIT_OK


def _add_logging_args(parser: argparse.ArgumentParser, default: str = SERVER_DEFAULTS.log_level) -> None:
    parser.add_argument(
        "--log-level",
        default=default,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help=f"Log level (default: {default})",
    )
    parser.add_argument("--log-file", help="Log file path")


def _add_orchestrator_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--backend",
        default=POOL_DEFAULTS.backend,
        choices=["subprocess", "docker"],
        help=f"Isolation backend (default: {POOL_DEFAULTS.backend})",
    )
    parser.add_argument(
        "--max-instances",
        type=int,
        default=POOL_DEFAULTS.max_instances,
        help=f"Maximum live sandbox instances (default: {POOL_DEFAULTS.max_instances})",
    )
    parser.add_argument(
        "--queue-depth",
        type=int,
        default=SCHEDULER_DEFAULTS.queue_depth,
        help=f"Admission queue depth (default: {SCHEDULER_DEFAULTS.queue_depth})",
    )
    parser.add_argument(
        "--acquire-timeout",
        type=float,
        default=POOL_DEFAULTS.acquire_timeout,
        help=f"Seconds to wait for a free instance (default: {POOL_DEFAULTS.acquire_timeout})",
    )
    parser.add_argument(
        "--max-provision-attempts",
        type=int,
        default=CONTROLLER_DEFAULTS.max_provision_attempts,
        help="Attempts to provision and stage a job before giving up",
    )
    parser.add_argument(
        "--compile-wall-ms",
        type=int,
        default=CONTROLLER_DEFAULTS.compile_wall_ms,
        help="Wall-clock budget for compilation in milliseconds",
    )
    parser.add_argument(
        "--supervisor-grace-ms",
        type=int,
        default=CONTROLLER_DEFAULTS.supervisor_grace_ms,
        help="Grace period past a phase's wall limit before the controller kills the instance",
    )
    parser.add_argument(
        "--no-reuse",
        action="store_true",
        help="Destroy every instance after one job instead of wiping and reusing clean ones",
    )
    parser.add_argument("--docker-user", help="User to run containers as (docker backend)")


def _add_job_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("file", help="Source file to run ('-' reads standard input)")
    parser.add_argument("--language", "-l", required=True, help="Language identifier or alias")
    stdin_group = parser.add_mutually_exclusive_group()
    stdin_group.add_argument("--input", "-i", help="Text fed to the program's stdin")
    stdin_group.add_argument("--stdin-file", help="File fed to the program's stdin")
    for name in LIMIT_FLAGS:
        parser.add_argument(f"--{name.replace('_', '-')}", dest=name, type=int, help=f"Tighten {name}")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="codejudge",
        description="Sandboxed multi-language code execution",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Start the execution API server")
    serve_parser.add_argument("--host", default=SERVER_DEFAULTS.host, help="Bind address")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=SERVER_DEFAULTS.port,
        help=f"Port (default: {SERVER_DEFAULTS.port})",
    )
    serve_parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Disable metrics collection",
    )
    serve_parser.add_argument(
        "--metrics-exporter",
        default="prometheus",
        choices=["prometheus", "otlp", "otlp_http", "console"],
        help="Metrics exporter type (default: prometheus)",
    )
    serve_parser.add_argument(
        "--metrics-endpoint",
        help="OTLP endpoint URL (e.g., http://localhost:4317 for gRPC, http://localhost:4318/v1/metrics for HTTP)",
    )
    _add_orchestrator_args(serve_parser)
    _add_logging_args(serve_parser)

    run_parser = subparsers.add_parser("run", help="Run one file locally through the full orchestrator")
    _add_job_args(run_parser)
    _add_orchestrator_args(run_parser)
    _add_logging_args(run_parser, default="WARNING")

    submit_parser = subparsers.add_parser("submit", help="Run one file on a codejudge server")
    _add_job_args(submit_parser)
    submit_parser.add_argument(
        "--server",
        default=f"http://localhost:{SERVER_DEFAULTS.port}",
        help="Server URL",
    )
    submit_parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout in seconds")
    _add_logging_args(submit_parser, default="WARNING")

    languages_parser = subparsers.add_parser("languages", help="List supported languages")
    languages_parser.add_argument("--server", help="Ask a server instead of the local registry")
    languages_parser.add_argument("--json", action="store_true", help="Print as JSON")
    _add_logging_args(languages_parser, default="WARNING")

    args = parser.parse_args()

    setup_logging(args.log_level, getattr(args, "log_file", None))

    try:
        if args.command == "serve":
            serve(args)
            code = EXIT_OK
        elif args.command == "run":
            code = run_local(args)
        elif args.command == "submit":
            code = submit_remote(args)
        elif args.command == "languages":
            code = list_languages(args)
        else:
            parser.print_help()
            code = EXIT_SERVICE_FAILURE
    except CodeJudgeError as e:
        logger.error(str(e))
        code = EXIT_SERVICE_FAILURE
    sys.exit(code)


if __name__ == "__main__":
    main()
