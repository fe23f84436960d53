"""Configuration loading and credential storage."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import fields
from pathlib import Path

import keyring

from drivelib.auth import Credential
from drivelib.models import UploadConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "drivelib"
KEY_NAME = "token"
TOKEN_ENV_VAR = "DRIVELIB_ACCESS_TOKEN"


def get_credential() -> Credential:
    """Get the stored credential: system keyring first, then env var fallback.

    The keyring holds the token as JSON (``access_token``, ``token_type``,
    ``expiry``/``expiry_date``, ``refresh_token``).  The environment variable
    holds a bare access token.

    Raises:
        RuntimeError: If no token is found anywhere, with actionable instructions.
    """
    stored = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if stored:
        try:
            return Credential.from_dict(json.loads(stored))
        except (json.JSONDecodeError, TypeError):
            # Older entries hold the bare token string.
            return Credential(access_token=stored)

    access_token = os.environ.get(TOKEN_ENV_VAR)
    if access_token:
        return Credential(access_token=access_token)

    raise RuntimeError(
        "Drive access token not found.\n"
        "Set it with: drivelib config set-token YOUR_TOKEN\n"
        f"Or: export {TOKEN_ENV_VAR}=your-token"
    )


def save_credential(credential: Credential) -> None:
    """Persist *credential* to the system keyring."""
    keyring.set_password(SERVICE_NAME, KEY_NAME, json.dumps(credential.to_dict()))
    logger.debug("Saved credential to keyring (%s/%s)", SERVICE_NAME, KEY_NAME)


def delete_credential() -> None:
    keyring.delete_password(SERVICE_NAME, KEY_NAME)


def load_config(config_path: Path | None) -> UploadConfig:
    """Load upload configuration from JSON, merging with defaults.

    Unknown keys are ignored with a warning so that config files can be shared
    across versions.

    Args:
        config_path: Path to a JSON object of :class:`UploadConfig` fields,
            or ``None`` for pure defaults.

    Returns:
        UploadConfig with values from file merged over defaults.
    """
    if config_path is None or not config_path.exists():
        return UploadConfig()

    with open(config_path) as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a JSON object")

    known = {f.name for f in fields(UploadConfig)}
    kwargs: dict[str, object] = {}
    for key, value in data.items():
        if key in known:
            kwargs[key] = value
        else:
            logger.warning("Ignoring unknown config key %r in %s", key, config_path)

    return UploadConfig(**kwargs)  # type: ignore[arg-type]
