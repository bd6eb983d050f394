# autoresponder/document_store.py
"""
DocumentStore

Keyed document storage behind one async interface. Logical collections:
- contacts           one document per (session, contact): capped message log
- universalPersonas  one document per session: the owner's own outgoing texts
- sessionConfigs     one document per session: AI flags, credentials, rules
- scheduledMessages  one document per (session, job)

Two backends:
- MongoDocumentStore     pymongo's async client (production)
- InMemoryDocumentStore  plain dicts (tests, local runs with STORE_BACKEND=memory)

Both keep the same semantics: push + slice to the cap, message counters,
by-index edit/delete for the persona inspection API.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient

from .config import settings
from .constants import MAX_MESSAGES_PER_CONTACT, MAX_UNIVERSAL_MESSAGES
from .errors import NotFoundError, ValidationError
from .logging_config import get_logger, log_fields

logger = get_logger(__name__)

ACTIVE_JOB_STATUSES = ("scheduled", "sending")
NO_SEND_TIME = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _send_at_key(doc: Dict[str, Any]) -> datetime:
    send_at = doc.get("sendAt")
    if not isinstance(send_at, datetime):
        return NO_SEND_TIME
    return send_at if send_at.tzinfo else send_at.replace(tzinfo=timezone.utc)


def _check_index(index: int) -> None:
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        raise ValidationError("Invalid message index")


def _clean_message(message: Any) -> str:
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Invalid message")
    return message.strip()


class DocumentStore(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    # Contact logs
    async def append_contact_messages(
        self, session_code: str, contact_id: str, entries: List[Dict[str, Any]]
    ) -> None: ...

    async def get_contact_messages(self, session_code: str, contact_id: str) -> List[Dict[str, Any]]: ...

    async def list_contacts(self, session_code: str) -> List[Dict[str, Any]]: ...

    async def update_contact_message(
        self, session_code: str, contact_id: str, index: int, message: str
    ) -> Dict[str, Any]: ...

    async def delete_contact_message(self, session_code: str, contact_id: str, index: int) -> int: ...

    # Universal corpus
    async def append_universal_messages(self, session_code: str, messages: List[str]) -> None: ...

    async def get_universal_messages(self, session_code: str) -> List[str]: ...

    async def update_universal_message(self, session_code: str, index: int, message: str) -> str: ...

    async def delete_universal_message(self, session_code: str, index: int) -> int: ...

    # Session configs
    async def load_session_config(self, session_code: str) -> Optional[Dict[str, Any]]: ...

    async def save_session_config(self, session_code: str, fields: Dict[str, Any]) -> None: ...

    async def list_session_codes(self) -> List[str]: ...

    # Scheduled jobs
    async def save_scheduled_job(self, session_code: str, job: Dict[str, Any]) -> None: ...

    async def update_scheduled_job(self, session_code: str, job_id: str, fields: Dict[str, Any]) -> None: ...

    async def delete_scheduled_job(self, session_code: str, job_id: str) -> bool: ...

    async def list_scheduled_jobs(self, session_code: str) -> List[Dict[str, Any]]: ...

    async def load_active_scheduled_jobs(self, session_code: str) -> List[Dict[str, Any]]: ...


# ---------------------------------------------------------------------------
# MongoDB
# ---------------------------------------------------------------------------
class MongoDocumentStore:
    """
    pymongo async client. Indexes are created lazily on first use.
    """

    def __init__(self, uri: Optional[str] = None, db_name: Optional[str] = None) -> None:
        self.uri = uri or settings.MONGO_URI
        self.db_name = db_name or settings.MONGO_DB_NAME
        self._client: Optional[AsyncMongoClient] = None
        self._db = None
        self._indexes_ready = False

    async def connect(self) -> None:
        if self._db is not None:
            return
        self._client = AsyncMongoClient(
            self.uri, maxPoolSize=10, minPoolSize=0, serverSelectionTimeoutMS=5000
        )
        self._db = self._client[self.db_name]
        await self._ensure_indexes()
        logger.info("MongoDB connected", extra=log_fields(dbName=self.db_name))

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.close()
            logger.info("MongoDB connection closed")
        finally:
            self._client = None
            self._db = None
            self._indexes_ready = False

    async def _ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        db = self._db
        await db.contacts.create_index([("sessionCode", ASCENDING), ("contactId", ASCENDING)], unique=True)
        await db.contacts.create_index([("sessionCode", ASCENDING), ("lastMessageAt", DESCENDING)])
        await db.universalPersonas.create_index([("sessionCode", ASCENDING)], unique=True)
        await db.sessionConfigs.create_index([("sessionCode", ASCENDING)], unique=True)
        await db.scheduledMessages.create_index([("sessionCode", ASCENDING), ("jobId", ASCENDING)], unique=True)
        await db.scheduledMessages.create_index([("sessionCode", ASCENDING), ("sendAt", ASCENDING)])
        self._indexes_ready = True

    async def _collection(self, name: str):
        await self.connect()
        return self._db[name]

    # -------------------------------------------------------------------------
    # Contact logs
    # -------------------------------------------------------------------------
    async def append_contact_messages(
        self, session_code: str, contact_id: str, entries: List[Dict[str, Any]]
    ) -> None:
        if not entries:
            return
        contacts = await self._collection("contacts")
        first, last = entries[0]["timestamp"], entries[-1]["timestamp"]
        await contacts.update_one(
            {"sessionCode": session_code, "contactId": contact_id},
            {
                "$setOnInsert": {"createdAt": first},
                "$set": {"lastMessageAt": last, "updatedAt": last},
                "$inc": {"messageCount": len(entries)},
                "$push": {"messages": {"$each": entries, "$slice": -MAX_MESSAGES_PER_CONTACT}},
            },
            upsert=True,
        )

    async def get_contact_messages(self, session_code: str, contact_id: str) -> List[Dict[str, Any]]:
        contacts = await self._collection("contacts")
        doc = await contacts.find_one({"sessionCode": session_code, "contactId": contact_id})
        if not doc or not isinstance(doc.get("messages"), list):
            return []
        return [
            {"message": str(entry.get("message") or ""), "timestamp": entry.get("timestamp")}
            for entry in doc["messages"]
            if entry.get("message")
        ]

    async def list_contacts(self, session_code: str) -> List[Dict[str, Any]]:
        contacts = await self._collection("contacts")
        cursor = contacts.find(
            {"sessionCode": session_code},
            {
                "contactId": 1,
                "messageCount": 1,
                "lastMessageAt": 1,
                "createdAt": 1,
                "messages": {"$slice": -1},
            },
        ).sort("lastMessageAt", DESCENDING)
        docs = await cursor.to_list(length=None)
        return [_contact_summary(doc) for doc in docs]

    async def _load_contact(self, session_code: str, contact_id: str) -> Tuple[Any, List[Dict[str, Any]]]:
        contacts = await self._collection("contacts")
        doc = await contacts.find_one({"sessionCode": session_code, "contactId": contact_id})
        if not doc or not isinstance(doc.get("messages"), list):
            raise NotFoundError("Contact not found")
        return contacts, doc["messages"]

    async def update_contact_message(
        self, session_code: str, contact_id: str, index: int, message: str
    ) -> Dict[str, Any]:
        _check_index(index)
        text = _clean_message(message)
        contacts, messages = await self._load_contact(session_code, contact_id)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        messages[index]["message"] = text
        await contacts.update_one(
            {"sessionCode": session_code, "contactId": contact_id},
            {"$set": {"messages": messages, "updatedAt": _utcnow()}},
        )
        return messages[index]

    async def delete_contact_message(self, session_code: str, contact_id: str, index: int) -> int:
        _check_index(index)
        contacts, messages = await self._load_contact(session_code, contact_id)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        del messages[index]
        await contacts.update_one(
            {"sessionCode": session_code, "contactId": contact_id},
            {"$set": {"messages": messages, "messageCount": len(messages), "updatedAt": _utcnow()}},
        )
        return len(messages)

    # -------------------------------------------------------------------------
    # Universal corpus
    # -------------------------------------------------------------------------
    async def append_universal_messages(self, session_code: str, messages: List[str]) -> None:
        if not messages:
            return
        universal = await self._collection("universalPersonas")
        await universal.update_one(
            {"sessionCode": session_code},
            {
                "$push": {"messages": {"$each": list(messages), "$slice": -MAX_UNIVERSAL_MESSAGES}},
                "$set": {"updatedAt": _utcnow()},
            },
            upsert=True,
        )

    async def get_universal_messages(self, session_code: str) -> List[str]:
        universal = await self._collection("universalPersonas")
        doc = await universal.find_one({"sessionCode": session_code})
        if not doc or not isinstance(doc.get("messages"), list):
            return []
        return [str(message) for message in doc["messages"]]

    async def _load_universal(self, session_code: str) -> Tuple[Any, List[str]]:
        universal = await self._collection("universalPersonas")
        doc = await universal.find_one({"sessionCode": session_code})
        if not doc or not isinstance(doc.get("messages"), list):
            raise NotFoundError("Universal persona not found")
        return universal, doc["messages"]

    async def update_universal_message(self, session_code: str, index: int, message: str) -> str:
        _check_index(index)
        text = _clean_message(message)
        universal, messages = await self._load_universal(session_code)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        messages[index] = text
        await universal.update_one(
            {"sessionCode": session_code},
            {"$set": {"messages": messages, "updatedAt": _utcnow()}},
        )
        return text

    async def delete_universal_message(self, session_code: str, index: int) -> int:
        _check_index(index)
        universal, messages = await self._load_universal(session_code)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        del messages[index]
        await universal.update_one(
            {"sessionCode": session_code},
            {"$set": {"messages": messages, "updatedAt": _utcnow()}},
        )
        return len(messages)

    # -------------------------------------------------------------------------
    # Session configs
    # -------------------------------------------------------------------------
    async def load_session_config(self, session_code: str) -> Optional[Dict[str, Any]]:
        configs = await self._collection("sessionConfigs")
        return await configs.find_one({"sessionCode": session_code})

    async def save_session_config(self, session_code: str, fields: Dict[str, Any]) -> None:
        configs = await self._collection("sessionConfigs")
        now = _utcnow()
        await configs.update_one(
            {"sessionCode": session_code},
            {"$set": {**fields, "updatedAt": now}, "$setOnInsert": {"createdAt": now}},
            upsert=True,
        )

    async def list_session_codes(self) -> List[str]:
        configs = await self._collection("sessionConfigs")
        cursor = configs.find({}, {"sessionCode": 1}).sort("updatedAt", DESCENDING)
        docs = await cursor.to_list(length=None)
        return [doc["sessionCode"] for doc in docs if doc.get("sessionCode")]

    # -------------------------------------------------------------------------
    # Scheduled jobs
    # -------------------------------------------------------------------------
    async def save_scheduled_job(self, session_code: str, job: Dict[str, Any]) -> None:
        jobs = await self._collection("scheduledMessages")
        now = _utcnow()
        body = {key: value for key, value in job.items() if key not in ("jobId", "createdAt")}
        await jobs.update_one(
            {"sessionCode": session_code, "jobId": job["jobId"]},
            {
                "$set": {**body, "updatedAt": now},
                "$setOnInsert": {"createdAt": job.get("createdAt") or now},
            },
            upsert=True,
        )

    async def update_scheduled_job(self, session_code: str, job_id: str, fields: Dict[str, Any]) -> None:
        jobs = await self._collection("scheduledMessages")
        await jobs.update_one(
            {"sessionCode": session_code, "jobId": job_id},
            {"$set": {**fields, "updatedAt": _utcnow()}},
        )

    async def delete_scheduled_job(self, session_code: str, job_id: str) -> bool:
        jobs = await self._collection("scheduledMessages")
        result = await jobs.delete_one({"sessionCode": session_code, "jobId": job_id})
        return result.deleted_count > 0

    async def list_scheduled_jobs(self, session_code: str) -> List[Dict[str, Any]]:
        jobs = await self._collection("scheduledMessages")
        cursor = jobs.find({"sessionCode": session_code}, {"_id": 0}).sort("sendAt", ASCENDING)
        return await cursor.to_list(length=None)

    async def load_active_scheduled_jobs(self, session_code: str) -> List[Dict[str, Any]]:
        jobs = await self._collection("scheduledMessages")
        cursor = jobs.find(
            {"sessionCode": session_code, "status": {"$in": list(ACTIVE_JOB_STATUSES)}},
            {"_id": 0},
        ).sort("sendAt", ASCENDING)
        return await cursor.to_list(length=None)


def _contact_summary(doc: Dict[str, Any]) -> Dict[str, Any]:
    messages = doc.get("messages") or []
    return {
        "contactId": doc.get("contactId"),
        "messageCount": doc.get("messageCount") or 0,
        "lastMessageAt": doc.get("lastMessageAt"),
        "createdAt": doc.get("createdAt"),
        "lastMessage": (messages[-1].get("message") if messages else "") or "",
    }


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------
class InMemoryDocumentStore:
    """
    Dictionary-based store with the same semantics as the Mongo one.

    Not persistent across restarts.
    """

    def __init__(self) -> None:
        self.contacts: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.universal: Dict[str, Dict[str, Any]] = {}
        self.configs: Dict[str, Dict[str, Any]] = {}
        self.jobs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.closed = False

    async def connect(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    # -------------------------------------------------------------------------
    # Contact logs
    # -------------------------------------------------------------------------
    async def append_contact_messages(
        self, session_code: str, contact_id: str, entries: List[Dict[str, Any]]
    ) -> None:
        if not entries:
            return
        key = (session_code, contact_id)
        doc = self.contacts.get(key)
        if doc is None:
            doc = {
                "sessionCode": session_code,
                "contactId": contact_id,
                "createdAt": entries[0]["timestamp"],
                "messageCount": 0,
                "messages": [],
            }
            self.contacts[key] = doc
        doc["messages"].extend(copy.deepcopy(entries))
        doc["messages"] = doc["messages"][-MAX_MESSAGES_PER_CONTACT:]
        doc["messageCount"] += len(entries)
        doc["lastMessageAt"] = entries[-1]["timestamp"]
        doc["updatedAt"] = entries[-1]["timestamp"]

    async def get_contact_messages(self, session_code: str, contact_id: str) -> List[Dict[str, Any]]:
        doc = self.contacts.get((session_code, contact_id))
        if not doc:
            return []
        return [
            {"message": str(entry.get("message") or ""), "timestamp": entry.get("timestamp")}
            for entry in doc["messages"]
            if entry.get("message")
        ]

    async def list_contacts(self, session_code: str) -> List[Dict[str, Any]]:
        docs = [doc for (code, _), doc in self.contacts.items() if code == session_code]
        docs.sort(key=lambda doc: doc.get("lastMessageAt") or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return [_contact_summary(doc) for doc in docs]

    def _contact_messages(self, session_code: str, contact_id: str) -> List[Dict[str, Any]]:
        doc = self.contacts.get((session_code, contact_id))
        if not doc:
            raise NotFoundError("Contact not found")
        return doc["messages"]

    async def update_contact_message(
        self, session_code: str, contact_id: str, index: int, message: str
    ) -> Dict[str, Any]:
        _check_index(index)
        text = _clean_message(message)
        messages = self._contact_messages(session_code, contact_id)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        messages[index]["message"] = text
        return dict(messages[index])

    async def delete_contact_message(self, session_code: str, contact_id: str, index: int) -> int:
        _check_index(index)
        messages = self._contact_messages(session_code, contact_id)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        del messages[index]
        self.contacts[(session_code, contact_id)]["messageCount"] = len(messages)
        return len(messages)

    # -------------------------------------------------------------------------
    # Universal corpus
    # -------------------------------------------------------------------------
    async def append_universal_messages(self, session_code: str, messages: List[str]) -> None:
        if not messages:
            return
        doc = self.universal.setdefault(session_code, {"sessionCode": session_code, "messages": []})
        doc["messages"] = (doc["messages"] + list(messages))[-MAX_UNIVERSAL_MESSAGES:]
        doc["updatedAt"] = _utcnow()

    async def get_universal_messages(self, session_code: str) -> List[str]:
        doc = self.universal.get(session_code)
        return list(doc["messages"]) if doc else []

    def _universal_messages(self, session_code: str) -> List[str]:
        doc = self.universal.get(session_code)
        if not doc:
            raise NotFoundError("Universal persona not found")
        return doc["messages"]

    async def update_universal_message(self, session_code: str, index: int, message: str) -> str:
        _check_index(index)
        text = _clean_message(message)
        messages = self._universal_messages(session_code)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        messages[index] = text
        return text

    async def delete_universal_message(self, session_code: str, index: int) -> int:
        _check_index(index)
        messages = self._universal_messages(session_code)
        if index >= len(messages):
            raise NotFoundError("Message not found")
        del messages[index]
        return len(messages)

    # -------------------------------------------------------------------------
    # Session configs
    # -------------------------------------------------------------------------
    async def load_session_config(self, session_code: str) -> Optional[Dict[str, Any]]:
        doc = self.configs.get(session_code)
        return copy.deepcopy(doc) if doc else None

    async def save_session_config(self, session_code: str, fields: Dict[str, Any]) -> None:
        now = _utcnow()
        doc = self.configs.setdefault(session_code, {"sessionCode": session_code, "createdAt": now})
        doc.update(copy.deepcopy(fields))
        doc["updatedAt"] = now

    async def list_session_codes(self) -> List[str]:
        return list(self.configs.keys())

    # -------------------------------------------------------------------------
    # Scheduled jobs
    # -------------------------------------------------------------------------
    async def save_scheduled_job(self, session_code: str, job: Dict[str, Any]) -> None:
        key = (session_code, job["jobId"])
        existing = self.jobs.get(key)
        doc = copy.deepcopy(job)
        doc["sessionCode"] = session_code
        if existing is not None:
            doc["createdAt"] = existing.get("createdAt")
        self.jobs[key] = doc

    async def update_scheduled_job(self, session_code: str, job_id: str, fields: Dict[str, Any]) -> None:
        doc = self.jobs.get((session_code, job_id))
        if doc is not None:
            doc.update(copy.deepcopy(fields))

    async def delete_scheduled_job(self, session_code: str, job_id: str) -> bool:
        return self.jobs.pop((session_code, job_id), None) is not None

    async def list_scheduled_jobs(self, session_code: str) -> List[Dict[str, Any]]:
        docs = [copy.deepcopy(doc) for (code, _), doc in self.jobs.items() if code == session_code]
        return sorted(docs, key=_send_at_key)

    async def load_active_scheduled_jobs(self, session_code: str) -> List[Dict[str, Any]]:
        docs = await self.list_scheduled_jobs(session_code)
        return [doc for doc in docs if doc.get("status") in ACTIVE_JOB_STATUSES]


def create_document_store() -> DocumentStore:
    if settings.STORE_BACKEND == "memory":
        return InMemoryDocumentStore()
    return MongoDocumentStore()
