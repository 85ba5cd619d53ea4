import argparse
import asyncio
import importlib
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from ruamel.yaml import YAML

from conn_funcs import ConnFunc, ConnFuncRegistry
from verify_runner import ConnectionVerifier, VerifyConfig, VerifyReport, VerifyRequest


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify that an engine accepts simulated sessions")
    parser.add_argument("config_file", help="Path to a YAML or JSON file with 'connection' and 'config' sections")
    parser.add_argument("--sim-users", dest="sim_users", type=int, default=None, help="Override config.sim_users")
    parser.add_argument("--log-level", dest="log_level", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    parser.add_argument(
        "--all-failures",
        dest="all_failures",
        action="store_true",
        help="Run every validator even after one fails",
    )
    parser.add_argument(
        "--conn-func",
        dest="conn_funcs",
        action="append",
        default=[],
        metavar="MODULE.FUNC",
        help="Register an extra connection validator (repeatable)",
    )
    return parser.parse_args(argv)


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read a YAML (or JSON, which YAML accepts) config file."""
    data = YAML(typ="safe").load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config file '{path}' must contain a mapping")
    return data


def import_conn_func(dotted_path: str) -> ConnFunc:
    modname, funcname = dotted_path.rsplit(".", 1)
    mod = importlib.import_module(modname)
    return getattr(mod, funcname)


def build_registry(dotted_paths: List[str]) -> ConnFuncRegistry:
    registry = ConnFuncRegistry()
    registry.register_conn_funcs(import_conn_func(p) for p in dotted_paths)
    return registry


def build_request(args: argparse.Namespace, data: Dict[str, Any]) -> VerifyRequest:
    request = VerifyRequest.model_validate(data)
    overrides: Dict[str, Any] = {}
    if args.sim_users is not None:
        overrides['sim_users'] = args.sim_users
    if args.all_failures:
        overrides['stop_on_first'] = False
    if args.log_level.upper() == "DEBUG":
        overrides['debug'] = True
    if overrides:
        # Re-validate so command line values get the same bounds as the config file
        request.config = VerifyConfig.model_validate({**request.config.model_dump(), **overrides})
    return request


def print_report(report: VerifyReport) -> None:
    for result in report.results:
        status = "PASS" if result.passed else "FAIL"
        print(f"user {result.user_id}: {status} ({result.duration_ms:.1f} ms)")
        for err in result.errors:
            print(f"    {err}")
    print(f"{report.passed} passed, {report.failed} failed")


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    try:
        request = build_request(args, load_config_file(Path(args.config_file)))
        registry = build_registry(args.conn_funcs)
    except Exception as e:
        logging.getLogger("verify_invoker").critical(f"Cannot start verification: {e}")
        return 2

    verifier = ConnectionVerifier(request.connection, registry, request.config)
    try:
        report = asyncio.run(verifier.run())
    except KeyboardInterrupt:
        print("Stopping verification...")
        return 130

    print_report(report)
    return 0 if report.all_passed else 1


if __name__ == "__main__":
    sys.exit(main())
