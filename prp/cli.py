"""
Prp CLI - Track open pull requests and keep your own rebased.

Commands:
    init-config  - Create an empty configuration file
    parse        - Show open pull requests with review and build status
    profile      - Add or update profiles (GitHub token and API URL)
    repo         - Manage tracked repositories
    auto-rebase  - Rebase your pull requests in their local clones
"""

from __future__ import annotations

import threading
from pathlib import Path

import click
from click.shell_completion import CompletionItem
from dotenv import load_dotenv

# Load .env file from current directory
load_dotenv()
load_dotenv(Path.cwd() / ".env")

from . import __version__
from .aggregator import Aggregator
from .completion import suggest_pull_request_numbers, suggest_repositories
from .config import (
    CONFIG_ENV_VAR,
    DEFAULT_PROFILE,
    ConfigError,
    Profile,
    PrpConfig,
    get_config_path,
    init_config as create_config,
)
from .coordinator import RebaseCoordinator
from .filters import filter_pull_requests
from .format import format_table
from .git import GitRunner
from .github import DEFAULT_CACHE_DIR, GitHubAPIError, GitHubClient
from .log import setup_logging
from .rebaser import Rebaser


def echo_error(message: str) -> None:
    click.echo(message, err=True)


def _config_path(ctx: click.Context) -> Path:
    return get_config_path(ctx.find_root().params.get("config_file"))


def _profile_name(ctx: click.Context) -> str:
    return ctx.find_root().params.get("profile_name") or DEFAULT_PROFILE


def _load_config(ctx: click.Context) -> PrpConfig:
    try:
        return PrpConfig.load(_config_path(ctx))
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _load_profile(ctx: click.Context) -> tuple[PrpConfig, Profile]:
    config = _load_config(ctx)
    try:
        return config, config.get_profile(_profile_name(ctx))
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _save_config(ctx: click.Context, config: PrpConfig) -> None:
    config.write(_config_path(ctx))


def _make_client(config: PrpConfig, profile: Profile, use_cache: bool = False) -> GitHubClient:
    return GitHubClient(
        token=profile.resolve_token(),
        api_url=profile.api_url or None,
        timeout=config.settings.request_timeout,
        cache_dir=DEFAULT_CACHE_DIR if use_cache else None,
    )


def _get_viewer(client: GitHubClient) -> str:
    try:
        return client.get_viewer()
    except GitHubAPIError as e:
        raise click.ClickException(f"Unable to identify the GitHub user: {e}") from e


def _selected_repos(profile: Profile, repos: tuple[str, ...]):
    if not repos:
        return list(profile.tracked_repos)
    return [repo for repo in profile.tracked_repos if repo.full_name in repos]


def _complete_profile(ctx: click.Context, param: click.Parameter, incomplete: str) -> list[CompletionItem]:
    try:
        config = PrpConfig.load(_config_path(ctx))
    except ConfigError:
        return []
    return [CompletionItem(name) for name in sorted(config.profiles) if name.startswith(incomplete)]


def _complete_tracked_repo(ctx: click.Context, param: click.Parameter, incomplete: str) -> list[CompletionItem]:
    try:
        config = PrpConfig.load(_config_path(ctx))
        profile = config.get_profile(_profile_name(ctx))
    except ConfigError:
        return []
    return [CompletionItem(name) for name in profile.repo_names() if name.startswith(incomplete)]


def _complete_repo_add(ctx: click.Context, param: click.Parameter, incomplete: str) -> list[CompletionItem]:
    try:
        config = PrpConfig.load(_config_path(ctx))
        profile = config.get_profile(_profile_name(ctx))
        client = _make_client(config, profile, use_cache=True)
        suggestions = suggest_repositories(
            client,
            client.get_viewer(),
            profile.tracked_repos,
            owner=ctx.params.get("owner") if param.name == "name" else None,
            max_workers=config.settings.max_workers,
        )
    except (ConfigError, GitHubAPIError):
        return []
    return [CompletionItem(value) for value in suggestions if value.startswith(incomplete)]


def _ignore_error(message: str) -> None:
    pass


def _complete_pull_request_number(ctx: click.Context, param: click.Parameter, incomplete: str) -> list[CompletionItem]:
    repos = tuple(ctx.params.get("repos") or ())
    try:
        config = PrpConfig.load(_config_path(ctx))
        profile = config.get_profile(_profile_name(ctx))
        client = _make_client(config, profile, use_cache=True)
        viewer = client.get_viewer()
        aggregator = Aggregator(client, max_workers=config.settings.max_workers, error_sink=_ignore_error)
        suggestions = suggest_pull_request_numbers(
            filter_pull_requests(
                aggregator.aggregate(_selected_repos(profile, repos), viewer),
                owner=viewer,
                repos=repos,
                needs_rebase=True,
            )
        )
    except (ConfigError, GitHubAPIError):
        return []
    return [CompletionItem(value) for value in suggestions if value.startswith(incomplete)]


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "-c", "config_file",
    envvar=CONFIG_ENV_VAR,
    type=click.Path(dir_okay=False),
    help="The config file (default: ~/.prp.yml)",
)
@click.option(
    "--profile", "-p", "profile_name",
    default=DEFAULT_PROFILE,
    show_default=True,
    shell_complete=_complete_profile,
    help="The current profile",
)
def main(config_file: str | None, profile_name: str):
    """Prp - Track open pull requests and keep your own rebased."""
    pass


@main.command("init-config")
@click.pass_context
def init_config(ctx: click.Context):
    """Initialize a configuration file."""
    path = _config_path(ctx)
    try:
        create_config(path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Created: {path}")


@main.command()
@click.option("--owner", "--user", "-u", "owner", help="Only show pull requests by owner.")
@click.option("--repo", "-r", "repos", multiple=True, shell_complete=_complete_tracked_repo,
              help="Only show pull requests on a repository (owner/name).")
@click.option("--need-rebase", is_flag=True, help="Only show pull requests that need a rebase.")
@click.option("--use-cache", "-c", is_flag=True, help="Cache GitHub responses on disk.")
@click.option("--verbose", "-v", is_flag=True, help="Output more info")
@click.pass_context
def parse(
    ctx: click.Context,
    owner: str | None,
    repos: tuple[str, ...],
    need_rebase: bool,
    use_cache: bool,
    verbose: bool,
):
    """Parse your pull requests."""
    setup_logging(verbose)
    config, profile = _load_profile(ctx)
    client = _make_client(config, profile, use_cache)
    viewer = _get_viewer(client)

    aggregator = Aggregator(
        client,
        max_workers=config.settings.max_workers,
        error_sink=echo_error,
        cancel_event=threading.Event(),
        hide_rebased=need_rebase,
    )
    records = filter_pull_requests(
        aggregator.aggregate(_selected_repos(profile, repos), viewer),
        owner=owner,
        repos=repos,
    )
    click.echo(format_table(records, verbose=verbose), nl=False)


@main.command("auto-rebase")
@click.option("--repo", "-r", "repos", multiple=True, shell_complete=_complete_tracked_repo,
              help="Only rebase these repos (owner/name).")
@click.option("--pull-request-number", "-n", "pull_request_number", type=int, default=None,
              shell_complete=_complete_pull_request_number, help="A specific pull request number")
@click.option("--use-cache", "-c", is_flag=True, help="Cache GitHub responses on disk.")
@click.option("--verbose", "-v", is_flag=True, help="Output more info")
@click.pass_context
def auto_rebase(
    ctx: click.Context,
    repos: tuple[str, ...],
    pull_request_number: int | None,
    use_cache: bool,
    verbose: bool,
):
    """Automatically rebase your pull requests with local path set."""
    setup_logging(verbose)
    config, profile = _load_profile(ctx)
    client = _make_client(config, profile, use_cache)
    viewer = _get_viewer(client)
    cancel = threading.Event()

    aggregator = Aggregator(
        client,
        max_workers=config.settings.max_workers,
        error_sink=echo_error,
        cancel_event=cancel,
    )
    records = filter_pull_requests(
        aggregator.aggregate(_selected_repos(profile, repos), viewer),
        owner=viewer,
        repos=repos,
        needs_rebase=True,
    )

    rebaser = Rebaser(
        GitRunner(timeout=config.settings.command_timeout),
        error_sink=echo_error,
        cancel_event=cancel,
    )
    coordinator = RebaseCoordinator(
        rebaser,
        max_workers=config.settings.max_workers,
        error_sink=echo_error,
        cancel_event=cancel,
    )
    try:
        succeeded = coordinator.rebase_all(records, pull_request_number=pull_request_number)
    except KeyboardInterrupt:
        cancel.set()
        raise
    if not succeeded:
        raise click.ClickException("Unable to rebase all pull requests")


@main.group()
def profile():
    """Manage profiles."""
    pass


@profile.command("add")
@click.argument("name")
@click.option("--token", "-t", help="The github access token for this profile")
@click.option("--api-url", "-a", "api_url",
              help="The url for accessing the github API (only needed for Enterprise GitHub)")
@click.pass_context
def profile_add(ctx: click.Context, name: str, token: str | None, api_url: str | None):
    """Add a profile."""
    config = _load_config(ctx)
    try:
        config.add_profile(name, token or "", api_url)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    _save_config(ctx, config)


@profile.command("update")
@click.argument("name")
@click.option("--token", "-t", help="The github access token for this profile")
@click.option("--api-url", "-a", "api_url",
              help="The url for accessing the github API (only needed for Enterprise GitHub)")
@click.pass_context
def profile_update(ctx: click.Context, name: str, token: str | None, api_url: str | None):
    """Update a profile."""
    config = _load_config(ctx)
    try:
        config.get_profile(name).update(token, api_url)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    _save_config(ctx, config)


@main.group()
def repo():
    """Manage repos."""
    pass


def _edit_profile(ctx: click.Context, change) -> None:
    config, active = _load_profile(ctx)
    try:
        change(active)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    _save_config(ctx, config)


@repo.command("add")
@click.argument("owner", shell_complete=_complete_repo_add)
@click.argument("name", shell_complete=_complete_repo_add)
@click.pass_context
def repo_add(ctx: click.Context, owner: str, name: str):
    """Add a repo."""
    _edit_profile(ctx, lambda p: p.add_repo(owner, name))


@repo.command("remove")
@click.argument("repo_name", shell_complete=_complete_tracked_repo)
@click.pass_context
def repo_remove(ctx: click.Context, repo_name: str):
    """Remove a repo (owner/name)."""
    _edit_profile(ctx, lambda p: p.remove_repo(repo_name))


@repo.command("ignore-build")
@click.argument("repo_name", shell_complete=_complete_tracked_repo)
@click.argument("build_name")
@click.pass_context
def repo_ignore_build(ctx: click.Context, repo_name: str, build_name: str):
    """Ignore a build context."""
    _edit_profile(ctx, lambda p: p.ignore_build(repo_name, build_name))


@repo.command("remove-ignored-build")
@click.argument("repo_name", shell_complete=_complete_tracked_repo)
@click.argument("build_name")
@click.pass_context
def repo_remove_ignored_build(ctx: click.Context, repo_name: str, build_name: str):
    """Remove a build from the list of ignored builds."""
    _edit_profile(ctx, lambda p: p.remove_ignored_build(repo_name, build_name))


@repo.command("set-path")
@click.argument("repo_name", shell_complete=_complete_tracked_repo)
@click.argument("local_path", type=click.Path(file_okay=False))
@click.pass_context
def repo_set_path(ctx: click.Context, repo_name: str, local_path: str):
    """Set the path of the local clone."""
    _edit_profile(ctx, lambda p: p.set_path(repo_name, local_path))


if __name__ == "__main__":
    main()
