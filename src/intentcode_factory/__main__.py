"""Entry point for `python -m intentcode_factory` and the `intentcode` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from dotenv import set_key

from intentcode_factory.errors import IntentCodeError
from intentcode_factory.extensions import load_extension_file
from intentcode_factory.llm import ensure_openai_api_key
from intentcode_factory.orchestrator import BuildOrchestrator, BuildServices
from intentcode_factory.settings import RuntimeSettings

logger = logging.getLogger("intentcode_factory")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="intentcode", description="Incremental spec -> intent -> source builds")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    project = commands.add_parser("project", help="Manage projects").add_subparsers(dest="action", required=True)
    init = project.add_parser("init", help="Register a project and create its specs/intent/src directories")
    init.add_argument("name")
    init.add_argument("path", type=Path)
    project.add_parser("list", help="List registered projects")

    build = commands.add_parser("build", help="Run the build stages for a project")
    build.add_argument("name")

    verify = commands.add_parser("verify", help="Check the mirrored dependency manifest for drift")
    verify.add_argument("name")

    extensions = commands.add_parser("extensions", help="Manage project extensions").add_subparsers(
        dest="action", required=True
    )
    load = extensions.add_parser("load", help="Install or upgrade an extension from a JSON manifest")
    load.add_argument("name")
    load.add_argument("file", type=Path)
    listing = extensions.add_parser("list", help="List installed extensions")
    listing.add_argument("name")
    remove = extensions.add_parser("remove", help="Remove an installed extension")
    remove.add_argument("name")
    remove.add_argument("extension_id")

    credentials = commands.add_parser("credentials", help="Manage the OpenAI API key").add_subparsers(
        dest="action", required=True
    )
    credentials.add_parser("check", help="Fail unless OPENAI_API_KEY is available")
    set_cmd = credentials.add_parser("set", help="Write a key to the .env file")
    set_cmd.add_argument("key")
    set_cmd.add_argument("value")
    return parser.parse_args(argv)


def _run_project(args: argparse.Namespace, services: BuildServices) -> int:
    if args.action == "init":
        roots = services.projects.setup_project(args.name, args.path)
        print(f"{roots.project.name}\t{roots.path}")
        return 0
    for node in services.projects.list_projects():
        print(f"{node.name}\t{node.path}")
    return 0


def _run_extensions(args: argparse.Namespace, services: BuildServices) -> int:
    project = services.projects.require_project(args.name).project
    if args.action == "load":
        extension = load_extension_file(args.file)
        services.extensions.install(project, extension)
        print(f"{extension.id}\t{extension.version}")
        return 0
    if args.action == "remove":
        if not services.extensions.remove(project, args.extension_id):
            logger.error("Extension %r is not installed in %r", args.extension_id, args.name)
            return 1
        return 0
    for extension in services.extensions.installed(project):
        print(f"{extension.id}\t{extension.version}\t{extension.name}\t{','.join(extension.hooks) or '-'}")
    return 0


def _run_credentials(args: argparse.Namespace, repo_root: Path) -> int:
    if args.action == "set":
        env_path = repo_root / ".env"
        env_path.touch(exist_ok=True)
        set_key(str(env_path), args.key, args.value)
        print(f"{args.key} written to {env_path}")
        return 0
    try:
        ensure_openai_api_key(repo_root=repo_root)
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1
    print("OPENAI_API_KEY is set")
    return 0


def _run_build(args: argparse.Namespace, services: BuildServices) -> int:
    summary = BuildOrchestrator(services, args.name).run()
    print(
        f"build={summary.project} stages={summary.stages_run} replans={summary.replans} "
        f"units={summary.units} cache_hits={summary.cache_hits} generated={summary.generated}"
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_root = Path.cwd()

    if args.command == "credentials":
        return _run_credentials(args, repo_root)

    try:
        settings = RuntimeSettings.from_env()
        if args.command == "build":
            ensure_openai_api_key(repo_root=repo_root)
        services = BuildServices.from_settings(settings, repo_root=repo_root)
        if args.command == "project":
            return _run_project(args, services)
        if args.command == "extensions":
            return _run_extensions(args, services)
        if args.command == "verify":
            services.manifest_files.verify(services.projects.require_project(args.name).project)
            print("manifest ok")
            return 0
        return _run_build(args, services)
    except (IntentCodeError, OSError, ValueError, RuntimeError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
