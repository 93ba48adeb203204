from keeper.preflight.preflight import (
    CheckResult,
    CheckStatus,
    PreflightArtifact,
    PreflightChecker,
    PreflightConfig,
)

__all__ = ["CheckResult", "CheckStatus", "PreflightArtifact", "PreflightChecker", "PreflightConfig"]
