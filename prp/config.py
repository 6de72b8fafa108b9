"""
Configuration management for Prp.

Loads and validates the YAML config file (default ~/.prp.yml):
- profiles: GitHub token, API URL and tracked repositories
- settings: timeouts and concurrency limits
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


CONFIG_ENV_VAR = "PRP_CONFIG_FILE"
DEFAULT_CONFIG_NAME = ".prp.yml"
DEFAULT_PROFILE = "default"


class ConfigError(Exception):
    """Invalid configuration or configuration change."""


@dataclass
class TrackedRepo:
    """A repository whose open pull requests are tracked."""

    owner: str
    name: str
    local_path: str | None = None
    ignored_builds: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"owner": self.owner, "name": self.name}
        if self.local_path:
            data["local_path"] = self.local_path
        data["ignored_builds"] = list(self.ignored_builds)
        return data


@dataclass
class Profile:
    """A GitHub account and the repositories tracked with it."""

    token: str = ""
    api_url: str = ""
    tracked_repos: list[TrackedRepo] = field(default_factory=list)

    def get_repo(self, full_name: str) -> TrackedRepo:
        parts = full_name.split("/")
        if len(parts) == 2:
            for repo in self.tracked_repos:
                if repo.owner == parts[0] and repo.name == parts[1]:
                    return repo
        raise ConfigError(f"Not a valid Repo: {full_name}")

    def repo_names(self) -> list[str]:
        return sorted(repo.full_name for repo in self.tracked_repos)

    def add_repo(self, owner: str, name: str) -> TrackedRepo:
        for repo in self.tracked_repos:
            if repo.owner == owner and repo.name == name:
                raise ConfigError(f"{owner}/{name} is already tracked")
        repo = TrackedRepo(owner=owner, name=name)
        self.tracked_repos.append(repo)
        return repo

    def remove_repo(self, full_name: str) -> None:
        self.tracked_repos.remove(self.get_repo(full_name))

    def ignore_build(self, full_name: str, build: str) -> None:
        repo = self.get_repo(full_name)
        if build in repo.ignored_builds:
            raise ConfigError(f"{build} is already being ignored by {full_name}")
        repo.ignored_builds.append(build)

    def remove_ignored_build(self, full_name: str, build: str) -> None:
        repo = self.get_repo(full_name)
        if build not in repo.ignored_builds:
            raise ConfigError(f"{build} is not being ignored by {full_name}")
        repo.ignored_builds.remove(build)

    def set_path(self, full_name: str, local_path: str) -> None:
        repo = self.get_repo(full_name)
        check_local_clone(local_path)
        repo.local_path = local_path

    def update(self, token: str | None = None, api_url: str | None = None) -> None:
        if token:
            self.token = token
        if api_url:
            self.api_url = api_url

    def resolve_token(self) -> str | None:
        return self.token or os.environ.get("GITHUB_TOKEN")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"token": self.token}
        if self.api_url:
            data["api_url"] = self.api_url
        data["tracked_repos"] = [repo.to_dict() for repo in self.tracked_repos]
        return data


@dataclass
class Settings:
    """Timeouts and concurrency limits."""

    request_timeout: float = 30.0  # seconds per HTTP request
    command_timeout: float = 300.0  # seconds per git invocation
    max_workers: int = 8

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_timeout": self.request_timeout,
            "command_timeout": self.command_timeout,
            "max_workers": self.max_workers,
        }


@dataclass
class PrpConfig:
    """Complete Prp configuration."""

    profiles: dict[str, Profile] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)

    def get_profile(self, name: str) -> Profile:
        if name in self.profiles:
            return self.profiles[name]
        raise ConfigError(f"Invalid Profile: {name}")

    def add_profile(self, name: str, token: str, api_url: str | None = None) -> Profile:
        if not token:
            raise ConfigError("You must specify a token")
        if name in self.profiles:
            raise ConfigError(f"Profile {name} already exists")
        profile = Profile(token=token, api_url=api_url or "")
        self.profiles[name] = profile
        return profile

    def validate(self) -> None:
        """Make sure every collection is initialized and settings are sane."""
        if self.profiles is None:
            self.profiles = {}
        for profile in self.profiles.values():
            if profile.tracked_repos is None:
                profile.tracked_repos = []
            for repo in profile.tracked_repos:
                if repo.ignored_builds is None:
                    repo.ignored_builds = []
        if self.settings.max_workers < 1:
            self.settings.max_workers = 1

    @classmethod
    def load(cls, path: Path) -> "PrpConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"Config file does not exist: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}\n{e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file is not a mapping: {path}")

        config = cls._parse(data)
        config.validate()
        return config

    def write(self, path: Path) -> None:
        data = {
            "profiles": {name: profile.to_dict() for name, profile in self.profiles.items()},
            "settings": self.settings.to_dict(),
        }
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)

    @staticmethod
    def _parse_repos(raw: list[Any]) -> list[TrackedRepo]:
        repos: list[TrackedRepo] = []
        for repo_data in raw or []:
            if not isinstance(repo_data, dict):
                continue
            repos.append(
                TrackedRepo(
                    owner=repo_data.get("owner", ""),
                    name=repo_data.get("name", ""),
                    local_path=repo_data.get("local_path"),
                    ignored_builds=list(repo_data.get("ignored_builds") or []),
                )
            )
        return repos

    @classmethod
    def _parse(cls, data: dict[str, Any]) -> "PrpConfig":
        config = cls()

        profiles_data = data.get("profiles") or {}
        if isinstance(profiles_data, dict):
            for name, profile_data in profiles_data.items():
                if not isinstance(profile_data, dict):
                    continue
                config.profiles[name] = Profile(
                    token=profile_data.get("token") or "",
                    api_url=profile_data.get("api_url") or "",
                    tracked_repos=cls._parse_repos(profile_data.get("tracked_repos", [])),
                )

        settings_data = data.get("settings") or {}
        config.settings = Settings(
            request_timeout=float(settings_data.get("request_timeout", 30.0)),
            command_timeout=float(settings_data.get("command_timeout", 300.0)),
            max_workers=int(settings_data.get("max_workers", 8)),
        )

        return config


def check_local_clone(local_path: str) -> Path:
    """Ensure a path exists and is a git working copy."""
    path = Path(local_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Path does not exist: {local_path}")
    if not (path / ".git").exists():
        raise ConfigError(f"Path is not a git repo: {local_path}")
    return path


def get_config_path(explicit: str | None = None) -> Path:
    """Resolve the config file location (explicit, env var, then home)."""
    if explicit:
        return Path(explicit).expanduser()
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser()
    return Path.home() / DEFAULT_CONFIG_NAME


def init_config(path: Path) -> PrpConfig:
    """Create an empty configuration file."""
    if path.exists():
        raise ConfigError(f"File already exists: {path}")
    config = PrpConfig()
    config.validate()
    config.write(path)
    return config
