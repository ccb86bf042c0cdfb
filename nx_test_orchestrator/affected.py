"""Computation of the projects affected by current changes."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from nx_test_orchestrator.errors import CommandError, CommandFailedError
from nx_test_orchestrator.nx_cli import NxCli

log = logging.getLogger(__name__)


def parse_affected_output(output: str) -> Sequence[str]:
    """Split newline-delimited project names, dropping blank lines."""
    return [line.strip() for line in output.splitlines() if line.strip()]


@dataclass(frozen=True, kw_only=True)
class AffectedCalculator:
    """Asks nx which projects are impacted relative to a base ref.

    Older nx versions have no ``show projects --affected``; when that command
    exits with an error the legacy ``affected:apps`` command is tried before
    giving up.
    """

    cli: NxCli

    async def affected(self, base_ref: str, head_ref: str = "HEAD") -> Sequence[str]:
        """Return affected project names, or an empty list on any failure."""
        try:
            output = await self.cli.show_affected(base_ref, head_ref)
        except CommandFailedError as e:
            log.warning("show projects --affected failed, trying affected:apps: %s", e)
            try:
                output = await self.cli.affected_apps(base_ref, head_ref)
            except CommandError as legacy_error:
                log.warning(
                    "Failed to compute affected projects (base=%s): %s",
                    base_ref,
                    legacy_error,
                )
                return []
        except CommandError as e:
            log.warning(
                "Failed to compute affected projects (base=%s): %s", base_ref, e
            )
            return []

        return parse_affected_output(output)
