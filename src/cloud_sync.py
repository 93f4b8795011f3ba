import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from context_schema import Commitment
from context_store import ContextStore
from pipeline import PipelineListener

logger = logging.getLogger(__name__)

# Only these commitment fields ever leave the machine; OCR text and images stay local.
SYNCED_FIELDS = ("text", "type", "recipient", "deadline", "detectedAt", "status", "confidence")


class CommitmentSyncClient:
    """MongoDB connector that stores detected commitments for other devices."""

    def __init__(
        self,
        uri: Optional[str] = None,
        db_name: Optional[str] = None,
        collection_name: Optional[str] = None,
    ) -> None:
        self.uri = uri or os.environ.get("FOLLOWTHROUGH_MONGO_URI")
        self.db_name = db_name or os.environ.get("FOLLOWTHROUGH_MONGO_DB", "followthrough")
        self.collection_name = collection_name or os.environ.get("FOLLOWTHROUGH_COLLECTION", "commitments")
        self.user_id = os.environ.get("FOLLOWTHROUGH_USER_ID")
        self._client: Optional[MongoClient] = None
        self._collection: Optional[Collection] = None
        self._healthy: Optional[bool] = None

    @property
    def enabled(self) -> bool:
        return self._ensure_connection() is not None

    def publish_commitment(self, commitment: Commitment) -> bool:
        collection = self._ensure_connection()
        if collection is None:
            return False

        full = commitment.to_dict()
        document: Dict = {key: full.get(key) for key in SYNCED_FIELDS}
        document["local_id"] = commitment.id
        document["user_id"] = self.user_id
        document["created_at"] = datetime.now(timezone.utc)
        try:
            collection.insert_one(document)
            logger.debug("Commitment %s synced", commitment.id)
            return True
        except PyMongoError as exc:  # pragma: no cover - network specific
            logger.warning("Failed to sync commitment %s: %s", commitment.id, exc)
            return False

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            self._collection = None

    def _ensure_connection(self) -> Optional[Collection]:
        if self._collection is not None:
            return self._collection

        if not self.uri:
            if self._healthy is None:
                logger.info("Cloud sync disabled: FOLLOWTHROUGH_MONGO_URI not set.")
                self._healthy = False
            return None
        if self._healthy is False:
            return None

        try:
            self._client = MongoClient(self.uri, serverSelectionTimeoutMS=4000)
            self._client.admin.command("ping")
            self._collection = self._client[self.db_name][self.collection_name]
            self._healthy = True
            logger.info("Cloud sync connected to %s/%s", self.db_name, self.collection_name)
        except PyMongoError as exc:  # pragma: no cover - network specific
            logger.warning("Unable to connect to cloud sync: %s", exc)
            self._client = None
            self._collection = None
            self._healthy = False

        return self._collection


class CloudSyncListener(PipelineListener):
    """Publishes each newly detected commitment and flips its local `synced` flag."""

    def __init__(self, store: ContextStore, client: Optional[CommitmentSyncClient] = None) -> None:
        self.store = store
        self.client = client or CommitmentSyncClient()

    def on_commitment_detected(self, commitment: Commitment) -> None:
        if commitment.id is None or not self.client.enabled:
            return
        if self.client.publish_commitment(commitment):
            self.store.mark_commitment_synced(commitment.id)
            commitment.synced = True

    def sync_backlog(self, limit: int = 50) -> int:
        """Retry commitments that were detected while sync was unavailable."""
        if not self.client.enabled:
            return 0
        synced = 0
        for commitment in self.store.get_unsynced_commitments(limit):
            if not self.client.publish_commitment(commitment):
                break
            self.store.mark_commitment_synced(commitment.id)
            synced += 1
        if synced:
            logger.info("Synced %d commitment(s) from backlog", synced)
        return synced
