"""
Command line entry point.

    replay-agent run WORKFLOW_FILE [--var NAME=VALUE ...]
    replay-agent scope --base-domain DOMAIN URL [URL ...]
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Optional

import structlog
import yaml

from .browser.login import FormLoginExecutor
from .browser.manager import BrowserManager
from .core.config import ConfigLoader
from .core.errors import ConfigError
from .core.log import configure_logging
from .core.models import RunConfig, RunOptions, RunStatus
from .core.state import StateManager
from .orchestrator.retry import RetryPolicy
from .orchestrator.runner import AgentRunner
from .scope.domain import DomainScope


logger = structlog.get_logger()


def parse_variables(pairs: list[str]) -> dict[str, Any]:
    """NAME=VALUE pairs; values are read as YAML so lists and numbers work."""
    variables: dict[str, Any] = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name.strip():
            raise ConfigError(f"Invalid variable '{pair}', expected NAME=VALUE")
        try:
            variables[name.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            variables[name.strip()] = raw
    return variables


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="replay-agent", description="Replay recorded browser workflows")
    parser.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a workflow file")
    run.add_argument("workflow_file")
    run.add_argument("--var", action="append", default=[], metavar="NAME=VALUE")
    run.add_argument("--db", default=os.getenv("REPLAY_AGENT_DB", "./data/state.db"))
    run.add_argument("--config", default=None, help="Runner config YAML/JSON")
    run.add_argument("--headful", action="store_true")
    run.add_argument("--base-domain", default=None, help="Restrict replay navigation to this domain")
    run.add_argument("--allow", action="append", default=[], metavar="DOMAIN")
    run.add_argument("--login-url", default=None)
    run.add_argument("--username", default=os.getenv("REPLAY_AGENT_USERNAME"))
    run.add_argument("--timeout", type=int, default=None, help="Run timeout in milliseconds")

    scope = subparsers.add_parser("scope", help="Classify URLs against a domain scope")
    scope.add_argument("--base-domain", required=True)
    scope.add_argument("--allow", action="append", default=[], metavar="DOMAIN")
    scope.add_argument("--sso", action="append", default=[], metavar="PROVIDER")
    scope.add_argument("urls", nargs="+")

    return parser


async def run_workflow(args: argparse.Namespace) -> int:
    loader = ConfigLoader()
    runner_config = loader.load_runner_config(args.config)
    workflow = loader.load_workflow(args.workflow_file)

    config = RunConfig(
        variables=parse_variables(args.var),
        options=RunOptions(headless=not args.headful, timeout=args.timeout),
    )
    if args.login_url:
        config.requires_login = True
        config.login_config = {
            "url": args.login_url,
            "username": args.username or "",
            "password": os.getenv("REPLAY_AGENT_PASSWORD", ""),
        }

    domain_scope: Optional[DomainScope] = None
    if args.base_domain:
        domain_scope = DomainScope({"base_domain": args.base_domain, "allowed_domains": args.allow})

    state = StateManager(args.db)
    await state.initialize()
    try:
        await state.save_workflow(workflow)

        async with BrowserManager(headless=config.options.headless) as browser:
            runner = AgentRunner(
                workflow_store=state,
                run_store=state,
                login_executor=FormLoginExecutor(),
                retry_policy=RetryPolicy.from_config(runner_config.retry),
                config=runner_config,
                domain_scope=domain_scope,
            )
            await runner.initialize(browser.browser, browser.page)
            try:
                result = await runner.run(workflow.id, config)
            finally:
                await runner.cleanup()
    finally:
        await state.close()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.status == RunStatus.SUCCESS else 1


def check_scope(args: argparse.Namespace) -> int:
    scope = DomainScope({
        "base_domain": args.base_domain,
        "allowed_domains": args.allow,
        "sso_providers": args.sso,
    })

    results = []
    for url in args.urls:
        event = scope.record_navigation(url)
        results.append(event.to_dict())

    state = scope.get_recording_state()
    print(json.dumps({
        "results": results,
        "stats": scope.get_domain_stats().to_dict(),
        "paused": state.is_paused,
        "reason": state.reason,
    }, indent=2))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)

    try:
        if args.command == "scope":
            return check_scope(args)
        return asyncio.run(run_workflow(args))
    except ConfigError as e:
        logger.error("config_error", error=e.message, **e.context)
        return 2
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
