"""Map each target to a build method and host, and resolve its act overrides."""

from __future__ import annotations

from typing import TYPE_CHECKING

from dsr.constants import DEFAULT_ACT_PLATFORM_LABEL, HOST_LINUX
from dsr.domain.errors import InvalidArgumentsError
from dsr.domain.models import (
    Architecture,
    BuildMethod,
    BuildOptions,
    BuildStrategy,
    OperatingSystem,
    Target,
    owner_of,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from dsr.config.repo_config import RepoConfig


class PlatformRouter:
    """Pure routing: the same repo config and target always yield the same strategy."""

    def owner_of(self, target: Target) -> str:
        return owner_of(target)

    def uses_container(self, repo_config: RepoConfig, target: Target) -> bool:
        return bool(repo_config.job_for(target))

    def strategy(self, repo_config: RepoConfig, target: Target) -> BuildStrategy:
        if self.uses_container(repo_config, target):
            return BuildStrategy(
                tool=repo_config.tool_name,
                target=target,
                method=BuildMethod.ACT,
                host=HOST_LINUX,
                job=repo_config.job_for(target) or "",
                options=self.options_for(repo_config, target),
            )
        return BuildStrategy(
            tool=repo_config.tool_name,
            target=target,
            method=BuildMethod.NATIVE,
            host=owner_of(target),
        )

    def build_matrix(
        self,
        repo_config: RepoConfig,
        targets: Iterable[Target | str] | None = None,
    ) -> tuple[BuildStrategy, ...]:
        """Return strategies for the configured targets, or for a requested subset.

        Order follows the repo config. Requesting a target the config does not list
        is an argument error.
        """

        selected = repo_config.targets
        if targets is not None:
            requested = [
                item if isinstance(item, Target) else Target.parse(item) for item in targets
            ]
            unknown = sorted(str(item) for item in requested if item not in repo_config.targets)
            if unknown:
                raise InvalidArgumentsError(
                    f"targets not configured for {repo_config.tool_name}: {', '.join(unknown)}"
                )
            wanted = set(requested)
            selected = tuple(item for item in repo_config.targets if item in wanted)
        return tuple(self.strategy(repo_config, target) for target in selected)

    def options_for(self, repo_config: RepoConfig, target: Target) -> BuildOptions:
        """Merge ``act_overrides`` into the flags act receives for ``target``."""

        overrides = repo_config.act_overrides
        flags: list[str] = []
        if overrides.platform_image:
            flags.extend(["-P", f"{DEFAULT_ACT_PLATFORM_LABEL}={overrides.platform_image}"])
        if overrides.secrets_file:
            flags.extend(["--secret-file", overrides.secrets_file])
        if overrides.env_file:
            flags.extend(["--env-file", overrides.env_file])
        if target.os is OperatingSystem.LINUX and target.arch is Architecture.ARM64:
            for flag in overrides.linux_arm64_flags:
                flags.extend(flag.split())
        return BuildOptions(
            act_flags=tuple(flags),
            platform_image=overrides.platform_image,
            secrets_file=overrides.secrets_file,
            env_file=overrides.env_file,
        )


__all__ = ["PlatformRouter"]
