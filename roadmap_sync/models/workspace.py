"""Workspace — tenant boundary and external-system connection settings."""

from roadmap_sync.models import db
from roadmap_sync.models.base import _iso, _utcnow, _uuid


class Workspace(db.Model):
    """One customer workspace connected to a Source and a Target System.

    Design decisions:
    - Both credentials are stored as Fernet-encrypted ciphertext. The raw
      values MUST NOT appear in logs or API responses; to_dict() only exposes
      has_source_token / has_target_token.
    - The row itself is handed to the gateways as their connection config.
      Services attach the decrypted tokens transiently as
      ``_plaintext_source_token`` / ``_plaintext_target_token``.
    """

    __tablename__ = "workspaces"

    SENSITIVE_FIELDS: frozenset[str] = frozenset({"encrypted_source_token", "encrypted_target_token"})

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    source_api_url = db.Column(
        db.String(500),
        nullable=True,
        comment="Source System API base URL; falls back to SOURCE_API_URL.",
    )
    encrypted_source_token = db.Column(
        db.Text,
        nullable=True,
        comment="Fernet-encrypted Source System API token. NEVER log or expose.",
    )
    target_organization = db.Column(db.String(200), nullable=True)
    target_project = db.Column(db.String(200), nullable=True)
    encrypted_target_token = db.Column(
        db.Text,
        nullable=True,
        comment="Fernet-encrypted Target System personal access token. NEVER log or expose.",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "source_api_url": self.source_api_url,
            "target_organization": self.target_organization,
            "target_project": self.target_project,
            "has_source_token": bool(self.encrypted_source_token),
            "has_target_token": bool(self.encrypted_target_token),
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Workspace {self.id[:8]} {self.name!r}>"
