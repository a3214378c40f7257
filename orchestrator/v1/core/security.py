import hmac
from dataclasses import dataclass

from fastapi import Depends, Header

from orchestrator.config.settings import Settings, get_settings
from orchestrator.v1.core.exceptions import ConfigurationError, UnauthorizedError

RUNNER_SECRET_HEADER = "X-Job-Runner-Secret"


@dataclass
class Principal:
    """Represents the caller on whose behalf a job is created or changed.

    Authentication happens upstream; the core only records who acted.
    """

    user_id: str | None = None


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> Principal:
    """Dependency injection function to get the current principal."""
    return Principal(user_id=x_user_id or None)


def secrets_match(provided: str, expected: str) -> bool:
    """Compare secrets in constant time."""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def verify_runner_secret(
    x_job_runner_secret: str | None = Header(None, alias=RUNNER_SECRET_HEADER),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Guard for the dispatcher trigger and worker callback endpoints.

    Raises ConfigurationError when no secret is configured so a misdeployed
    runner is never silently open.
    """
    if not settings.job_runner_secret:
        raise ConfigurationError("JOB_RUNNER_SECRET is not configured")

    if not x_job_runner_secret or not secrets_match(
        x_job_runner_secret, settings.job_runner_secret
    ):
        raise UnauthorizedError("Invalid job runner secret")


# Convenience type aliases for dependency injection
PrincipalDep = Depends(get_principal)
RunnerSecretDep = Depends(verify_runner_secret)
