"""Version manifest: known-good ("golden") dependency versions.

Used to pick rollback targets and to stamp audit entries with the
deployed versions before and after a remediation.
"""

from __future__ import annotations

from threading import Lock

from loguru import logger

from healguard.models import HealingAction, HealingResult, VersionsConfig


class VersionManifest:
    """Registry of golden and currently deployed dependency versions."""

    def __init__(
        self,
        golden: dict[str, str] | None = None,
        current: dict[str, str] | None = None,
        release: str | None = None,
    ):
        self.release = release
        self._golden = dict(golden or {})
        # Packages without a recorded deployment are assumed to be on golden
        self._current = {**self._golden, **(current or {})}
        self._lock = Lock()

    @classmethod
    def from_config(cls, config: VersionsConfig) -> "VersionManifest":
        return cls(golden=config.golden, current=config.current, release=config.release)

    def get_golden_version(self, package: str) -> str | None:
        return self._golden.get(package)

    def get_current_version(self, package: str) -> str | None:
        with self._lock:
            return self._current.get(package)

    def is_golden(self, package: str, version: str | None = None) -> bool:
        """Check whether a version (default: the deployed one) is the golden one."""
        golden = self._golden.get(package)
        if golden is None:
            return False
        if version is None:
            version = self.get_current_version(package)
        return version == golden

    def get_rollback_target(self, package: str) -> str | None:
        """Golden version to roll back to, or None if already there or unknown."""
        golden = self._golden.get(package)
        if golden is None:
            logger.debug(f"No golden version registered for {package}")
            return None
        if self.get_current_version(package) == golden:
            return None
        return golden

    def drifted_packages(self) -> dict[str, tuple[str | None, str]]:
        """Packages whose deployed version differs from golden, as (current, golden)."""
        with self._lock:
            return {
                pkg: (self._current.get(pkg), golden)
                for pkg, golden in self._golden.items()
                if self._current.get(pkg) != golden
            }

    def record_version(self, package: str, version: str) -> None:
        with self._lock:
            previous = self._current.get(package)
            self._current[package] = version
        if previous != version:
            logger.info(f"Recorded {package} version change: {previous} -> {version}")

    def set_golden(self, package: str, version: str) -> None:
        with self._lock:
            self._golden[package] = version

    def describe(self) -> str:
        """Render the deployed state as a single version string."""
        with self._lock:
            pins = ", ".join(f"{pkg}@{ver}" for pkg, ver in sorted(self._current.items()))
        release = self.release or "unversioned"
        return f"{release} [{pins}]" if pins else release

    def capture(self, action: HealingAction, result: HealingResult | None) -> tuple[str, str | None]:
        """Return (before, after) version strings around an execution.

        Steps carrying `package` and `version` parameters are treated as
        version changes and applied only when the execution succeeded. A
        missing result (blocked action) yields no after-version.
        """
        before = self.describe()
        if result is None:
            return before, None

        if result.success:
            for step in action.steps:
                package = step.parameters.get("package")
                version = step.parameters.get("version") or step.parameters.get("target_version")
                if package and version:
                    self.record_version(str(package), str(version))

        return before, self.describe()
