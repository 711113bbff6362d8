"""
Workspace Service — connection settings and credentials per workspace.

Both external credentials are Fernet-encrypted before storage and decrypted
only for the duration of a gateway call chain. Callers receive the
serialised Workspace (flags only, never tokens).
"""

from __future__ import annotations

import logging

from cryptography.fernet import InvalidToken
from sqlalchemy import select

from roadmap_sync.core.exceptions import NotFoundError, ValidationError
from roadmap_sync.models import db
from roadmap_sync.models.workspace import Workspace
from roadmap_sync.utils.crypto import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("name", "source_api_url", "target_organization", "target_project", "is_active")


def load_workspace(workspace_id: str) -> Workspace:
    """Return the Workspace row or raise NotFoundError."""
    workspace = db.session.execute(
        select(Workspace).where(Workspace.id == workspace_id)
    ).scalar_one_or_none()
    if workspace is None:
        raise NotFoundError(resource="Workspace", resource_id=workspace_id)
    return workspace


def _apply_tokens(workspace: Workspace, data: dict) -> None:
    # Rotate a token only if a new one is provided
    if data.get("source_token"):
        workspace.encrypted_source_token = encrypt_secret(data["source_token"])
    if data.get("target_token"):
        workspace.encrypted_target_token = encrypt_secret(data["target_token"])


def create_workspace(data: dict) -> dict:
    """Create a workspace.

    Args:
        data: {
            name: str (required),
            source_api_url, target_organization, target_project: str (optional),
            source_token, target_token: str (optional, stored encrypted),
        }

    Raises:
        ValidationError: If ``name`` is missing.
        RuntimeError: If a token is supplied and ENCRYPTION_KEY is not set.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    workspace = Workspace(name=name)
    for field in _UPDATABLE_FIELDS[1:]:
        if field in data:
            setattr(workspace, field, data[field])
    _apply_tokens(workspace, data)

    db.session.add(workspace)
    db.session.commit()
    logger.info("Workspace created id=%s", workspace.id, extra={"workspace_id": workspace.id})
    return workspace.to_dict()


def update_workspace(workspace_id: str, data: dict) -> dict:
    """Update connection settings; tokens rotate only when a new one is supplied."""
    workspace = load_workspace(workspace_id)
    for field in _UPDATABLE_FIELDS:
        if field in data:
            if field == "name" and not (data["name"] or "").strip():
                raise ValidationError("name cannot be empty", details={"name": "required"})
            setattr(workspace, field, data[field])
    _apply_tokens(workspace, data)
    db.session.commit()
    logger.info("Workspace updated id=%s", workspace_id, extra={"workspace_id": workspace_id})
    return workspace.to_dict()


def get_workspace(workspace_id: str) -> dict:
    return load_workspace(workspace_id).to_dict()


def _decrypt_stored(workspace: Workspace, field: str) -> str:
    """Decrypt ``encrypted_<field>``; a key that no longer matches is a config error."""
    try:
        return decrypt_secret(getattr(workspace, f"encrypted_{field}"))
    except InvalidToken:
        logger.error(
            "Stored %s cannot be decrypted with the current ENCRYPTION_KEY", field,
            extra={"workspace_id": workspace.id},
        )
        raise ValidationError(
            "Stored credential cannot be decrypted; set it again for this workspace",
            details={field: "undecryptable"},
        )


def get_workspace_with_source_token(workspace_id: str, override_token: str | None = None) -> Workspace:
    """Return the Workspace with ``_plaintext_source_token`` set transiently.

    ``override_token`` (an explicit credential from the caller) wins over the
    stored one.

    Raises:
        NotFoundError: Unknown workspace.
        ValidationError: Neither an override nor a stored token exists, or
            the stored one cannot be decrypted.
    """
    workspace = load_workspace(workspace_id)
    if override_token:
        workspace._plaintext_source_token = override_token
    elif workspace.encrypted_source_token:
        workspace._plaintext_source_token = _decrypt_stored(workspace, "source_token")
    else:
        raise ValidationError(
            "No Source System credential configured for this workspace",
            details={"source_token": "required"},
        )
    return workspace


def get_workspace_with_target_token(workspace_id: str) -> Workspace:
    """Return the Workspace with ``_plaintext_target_token`` set transiently.

    Raises:
        NotFoundError: Unknown workspace.
        ValidationError: Target connection is not fully configured or its
            stored PAT cannot be decrypted.
    """
    workspace = load_workspace(workspace_id)
    missing = [
        f for f in ("target_organization", "target_project", "encrypted_target_token")
        if not getattr(workspace, f)
    ]
    if missing:
        raise ValidationError(
            "Target System connection is not configured for this workspace",
            details={f: "required" for f in missing},
        )
    workspace._plaintext_target_token = _decrypt_stored(workspace, "target_token")
    return workspace
