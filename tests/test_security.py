import pytest

from orchestrator.config.settings import Settings
from orchestrator.v1.core.exceptions import ConfigurationError, UnauthorizedError
from orchestrator.v1.core.security import (
    Principal,
    get_principal,
    secrets_match,
    verify_runner_secret,
)


def test_secrets_match():
    assert secrets_match("runner-secret", "runner-secret")
    assert not secrets_match("runner-secreT", "runner-secret")
    assert not secrets_match("", "runner-secret")


async def test_principal_from_header():
    assert await get_principal("user-7") == Principal(user_id="user-7")
    assert await get_principal(None) == Principal(user_id=None)
    assert await get_principal("") == Principal(user_id=None)


async def test_verify_runner_secret_accepts_matching_secret():
    settings = Settings(_env_file=None, job_runner_secret="s3cret")
    assert await verify_runner_secret("s3cret", settings) is None


@pytest.mark.parametrize("provided", [None, "", "wrong"])
async def test_verify_runner_secret_rejects(provided):
    settings = Settings(_env_file=None, job_runner_secret="s3cret")
    with pytest.raises(UnauthorizedError):
        await verify_runner_secret(provided, settings)


async def test_verify_runner_secret_requires_configuration():
    settings = Settings(_env_file=None, job_runner_secret=None)
    with pytest.raises(ConfigurationError, match="JOB_RUNNER_SECRET"):
        await verify_runner_secret("anything", settings)
