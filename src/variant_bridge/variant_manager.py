"""
Design variant records and their cleanup.

Variants are created in ``preview`` and otherwise edited only in their name,
configuration and preview artifact here; their status belongs to the job
queue in ``job_manager``. Deleting a variant removes its artifacts from the
blob store first (best effort), then the variant and its jobs.
"""

from __future__ import annotations

import logging
from typing import List

from .blob_store import BlobStore, discard_blobs
from .database import BridgeDatabase
from .errors import NotFoundError, StorageError
from .models import DesignVariant, VariantCreate, VariantDetail, VariantStatus, VariantUpdate
from .utils import new_id, unique, utcnow

logger = logging.getLogger(__name__)


class VariantManager:
    def __init__(self, database: BridgeDatabase, blob_store: BlobStore) -> None:
        self.database = database
        self.blob_store = blob_store

    def list_variants(self, item_id: str) -> List[DesignVariant]:
        with self.database.connection() as conn:
            return self.database.list_variants(conn, item_id)

    def get_variant(self, item_id: str, variant_id: str) -> DesignVariant:
        with self.database.connection() as conn:
            variant = self.database.get_variant(conn, variant_id)
        if variant is None or variant.item_id != item_id:
            raise NotFoundError("Variant not found")
        return variant

    def describe_variant(self, item_id: str, variant_id: str) -> VariantDetail:
        """Variant plus download URLs for its artifacts; unresolvable URLs come back as None."""
        variant = self.get_variant(item_id, variant_id)
        return VariantDetail(
            **variant.model_dump(),
            preview_url=self._artifact_url(variant.preview_artifact),
            final_url=self._artifact_url(variant.final_artifact),
        )

    def _artifact_url(self, artifact) -> str | None:
        if artifact is None:
            return None
        try:
            return self.blob_store.get_url(artifact.path, artifact.is_public)
        except StorageError as exc:
            logger.error(f"Could not resolve URL for {artifact.path}: {exc}")
            return None

    def create_variant(self, item_id: str, payload: VariantCreate) -> DesignVariant:
        variant = DesignVariant(
            id=new_id(),
            item_id=item_id,
            variant_name=payload.variant_name,
            configuration=payload.configuration,
            status=VariantStatus.PREVIEW,
            preview_artifact=payload.preview_artifact,
            created_at=utcnow(),
        )
        with self.database.transaction() as conn:
            if not self.database.item_exists(conn, item_id):
                raise NotFoundError("Item not found")
            self.database.insert_variant(conn, variant)

        logger.info(f"Created variant {variant.id} for item {item_id}")
        return variant

    def update_variant(self, item_id: str, variant_id: str, payload: VariantUpdate) -> DesignVariant:
        """
        Edit name, configuration or preview artifact.

        Only fields present in the payload change. A replaced preview
        artifact is deleted from the blob store after the update commits.
        """
        changes = payload.model_dump(exclude_unset=True)
        fields = {}
        if "variant_name" in changes:
            fields["variant_name"] = payload.variant_name
        if "configuration" in changes:
            fields["configuration"] = payload.configuration
        if "preview_artifact" in changes:
            preview = payload.preview_artifact
            fields["preview_path"] = preview.path if preview else None
            fields["preview_is_public"] = int(preview.is_public) if preview else 0

        with self.database.transaction() as conn:
            variant = self.database.get_variant(conn, variant_id)
            if variant is None or variant.item_id != item_id:
                raise NotFoundError("Variant not found")
            self.database.update_variant(conn, variant_id, **fields)
            updated = self.database.get_variant(conn, variant_id)

        old_preview = variant.preview_artifact
        if old_preview is not None and "preview_path" in fields and fields["preview_path"] != old_preview.path:
            discard_blobs(self.blob_store, [old_preview.path])
        return updated

    def delete_variant(self, item_id: str, variant_id: str) -> None:
        """
        Delete one variant, its jobs and all their artifacts.

        Blob deletion failures are logged and do not stop the row deletion.

        Raises:
            NotFoundError: No such variant under this item
        """
        variant = self.get_variant(item_id, variant_id)
        self._delete([variant])
        logger.info(f"Deleted variant {variant_id}")

    def delete_item_variants(self, item_id: str) -> int:
        """Delete every variant of an item the same way; returns how many went."""
        variants = self.list_variants(item_id)
        deleted = self._delete(variants)
        logger.info(f"Deleted {deleted} variant(s) of item {item_id}")
        return deleted

    def _delete(self, variants: List[DesignVariant]) -> int:
        if not variants:
            return 0
        variant_ids = [variant.id for variant in variants]

        with self.database.connection() as conn:
            jobs = self.database.jobs_for_variants(conn, variant_ids)

        paths = []
        for variant in variants:
            if variant.preview_artifact is not None:
                paths.append(variant.preview_artifact.path)
            if variant.final_artifact is not None:
                paths.append(variant.final_artifact.path)
        paths.extend(job.artifact.path for job in jobs if job.artifact is not None)

        failed = discard_blobs(self.blob_store, unique(paths))
        if failed:
            logger.warning(f"Left {len(failed)} blob(s) behind while deleting variants: {', '.join(failed)}")

        with self.database.transaction() as conn:
            return self.database.delete_variants(conn, variant_ids)
