"""
Hierarchy Store models.

Products → Components → Features (self-referential tree), plus Initiatives
and the two many-to-many junction sets that tie them together:

  InitiativeFeatureLink    Initiative ↔ Feature, declared in the Source System
  ComponentInitiativeLink  Component ↔ Initiative, declared directly or derived
                           through a Feature of the Component

Every row is keyed for upsert by (workspace_id, source_id). The opaque
``metadata`` bag is exposed on the model as ``metadata_`` because the
declarative base reserves the ``metadata`` attribute name.
"""

from roadmap_sync.models import db
from roadmap_sync.models.base import WorkspaceModel, _iso, _utcnow, _uuid


class _SourceEntityMixin:
    """Columns shared by every entity mirrored from the Source System."""

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    source_id = db.Column(db.String(100), nullable=False)
    name = db.Column(db.String(500), nullable=False, default="")
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(100), nullable=True)
    metadata_ = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "source_id": self.source_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "metadata": self.metadata_ or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "synced_at": _iso(self.synced_at),
        }

    def to_dict(self) -> dict:
        return self._base_dict()


class Product(_SourceEntityMixin, WorkspaceModel):
    """Top-level product. Only ever removed by a full teardown."""

    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "source_id", name="uq_products_ws_source"),
    )

    def __repr__(self):
        return f"<Product {self.source_id} {self.name!r}>"


class Component(_SourceEntityMixin, WorkspaceModel):
    """Component of a Product. ``product_id`` null means unassigned."""

    __tablename__ = "components"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "source_id", name="uq_components_ws_source"),
    )

    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    def to_dict(self) -> dict:
        d = self._base_dict()
        d["product_id"] = self.product_id
        return d

    def __repr__(self):
        return f"<Component {self.source_id} {self.name!r}>"


class Initiative(_SourceEntityMixin, WorkspaceModel):
    """Cross-cutting initiative, optionally owned by a Product."""

    __tablename__ = "initiatives"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "source_id", name="uq_initiatives_ws_source"),
    )

    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    timeframe = db.Column(db.JSON, nullable=True)
    owner = db.Column(db.String(200), nullable=True)

    def to_dict(self) -> dict:
        d = self._base_dict()
        d.update({
            "product_id": self.product_id,
            "timeframe": self.timeframe,
            "owner": self.owner,
        })
        return d

    def __repr__(self):
        return f"<Initiative {self.source_id} {self.name!r}>"


class Feature(_SourceEntityMixin, WorkspaceModel):
    """
    Feature node of the self-referential tree.

    ``parent_id`` deliberately has no ON DELETE action: deleting a parent while
    children still reference it is refused by the datastore, which is why the
    teardown strips leaves bottom-up.
    """

    __tablename__ = "features"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "source_id", name="uq_features_ws_source"),
        db.Index("ix_features_ws_parent", "workspace_id", "parent_id"),
    )

    component_id = db.Column(
        db.String(36), db.ForeignKey("components.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    parent_id = db.Column(db.String(36), db.ForeignKey("features.id"), nullable=True)
    owner = db.Column(db.String(200), nullable=True)
    target_start_date = db.Column(db.Date, nullable=True)
    target_end_date = db.Column(db.Date, nullable=True)

    def to_dict(self) -> dict:
        d = self._base_dict()
        d.update({
            "component_id": self.component_id,
            "parent_id": self.parent_id,
            "owner": self.owner,
            "target_start_date": _iso(self.target_start_date),
            "target_end_date": _iso(self.target_end_date),
        })
        return d

    def __repr__(self):
        return f"<Feature {self.source_id} parent={self.parent_id}>"


class InitiativeFeatureLink(WorkspaceModel):
    """Initiative ↔ Feature link as declared in the Source System."""

    __tablename__ = "initiative_features"
    __table_args__ = (
        db.UniqueConstraint("initiative_id", "feature_id", name="uq_initiative_features_pair"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    initiative_id = db.Column(
        db.String(36), db.ForeignKey("initiatives.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    feature_id = db.Column(
        db.String(36), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    metadata_ = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "initiative_id": self.initiative_id,
            "feature_id": self.feature_id,
            "metadata": self.metadata_ or {},
            "created_at": _iso(self.created_at),
        }


class ComponentInitiativeLink(WorkspaceModel):
    """
    Component ↔ Initiative link.

    direct_link=True   declared on the Initiative in the Source System
    direct_link=False  derived: one of the Component's Features is linked to
                        the Initiative; link_via_feature_id names that Feature
    """

    __tablename__ = "component_initiatives"
    __table_args__ = (
        db.UniqueConstraint("component_id", "initiative_id", name="uq_component_initiatives_pair"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    component_id = db.Column(
        db.String(36), db.ForeignKey("components.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    initiative_id = db.Column(
        db.String(36), db.ForeignKey("initiatives.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    direct_link = db.Column(db.Boolean, nullable=False, default=True)
    link_via_feature_id = db.Column(
        db.String(36), db.ForeignKey("features.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "component_id": self.component_id,
            "initiative_id": self.initiative_id,
            "direct_link": self.direct_link,
            "link_via_feature_id": self.link_via_feature_id,
            "created_at": _iso(self.created_at),
        }
