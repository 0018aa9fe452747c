"""Load and save the credential bundle.

Extracting credentials from a browser profile is not done here; the bundle
is entered manually with ``claudesync init`` and stored in ``auth.json``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .errors import CredentialMissing
from .models import CredentialBundle
from .storage import write_atomic

logger = logging.getLogger(__name__)


def load_credentials(path: Path) -> CredentialBundle:
    if not path.exists():
        raise CredentialMissing("No authentication tokens found.")

    try:
        bundle = CredentialBundle.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        # The validation error may echo input values, so keep it out of the message
        logger.debug("Credential file %s is unreadable: %s", path, type(e).__name__)
        raise CredentialMissing(f"Authentication file {path} is unreadable.") from None

    logger.debug("Loaded credentials for organization %s", bundle.organization_id)
    return bundle


def save_credentials(bundle: CredentialBundle, path: Path) -> None:
    write_atomic(path, bundle.to_json())
    logger.info("Authentication tokens saved to %s", path)