"""SQLAlchemy-backed attachment store used by the worker."""

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import create_engine, insert, select, update
from sqlalchemy.engine import Engine

from .api.db_models import Base, Lead
from .queue.backends import AttachmentStore


def init_db(database_url: str) -> Engine:
    """Create tables if they do not exist."""
    engine = create_engine(database_url)
    Base.metadata.create_all(engine)
    return engine


def decode_attachments(raw: Optional[str]) -> List[Dict[str, Any]]:
    if not raw:
        return []
    value = json.loads(raw)
    return value if isinstance(value, list) else []


class SqlAttachmentStore(AttachmentStore):
    """Targeted attachment updates on the ``Lead`` table.

    Each update reads and rewrites the attachment list inside one transaction
    with ``SELECT ... FOR UPDATE`` on the lead row. SQLite ignores the row
    lock but serializes writers anyway.
    """

    def __init__(self, database_url: str, engine: Optional[Engine] = None):
        self.database_url = database_url
        self.engine = engine or create_engine(database_url)

    def init_db(self) -> None:
        Base.metadata.create_all(self.engine)

    def create_lead(
        self,
        name: str,
        email: str,
        phone: Optional[str] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
        lead_id: Optional[str] = None,
    ) -> str:
        lead_id = lead_id or str(uuid.uuid4())
        now = datetime.utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                insert(Lead).values(
                    id=lead_id,
                    name=name,
                    email=email,
                    phone=phone,
                    attachments=json.dumps(attachments or []),
                    createdAt=now,
                    updatedAt=now,
                )
            )
        return lead_id

    def get_attachments(self, lead_id: str) -> Optional[List[Dict[str, Any]]]:
        """Attachment list of a lead, or None if the lead does not exist."""
        with self.engine.connect() as conn:
            row = conn.execute(select(Lead.attachments).where(Lead.id == lead_id)).first()
        if row is None:
            return None
        return decode_attachments(row.attachments)

    def append_attachments(self, lead_id: str, entries: List[Dict[str, Any]]) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(Lead.attachments).where(Lead.id == lead_id).with_for_update()
            ).first()
            if row is None:
                return False
            attachments = decode_attachments(row.attachments) + list(entries)
            conn.execute(
                update(Lead)
                .where(Lead.id == lead_id)
                .values(attachments=json.dumps(attachments), updatedAt=datetime.utcnow())
            )
        return True

    def update_attachment(
        self,
        lead_id: str,
        attachment_id: str,
        updater: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(Lead.attachments).where(Lead.id == lead_id).with_for_update()
            ).first()
            if row is None:
                return False

            attachments = decode_attachments(row.attachments)
            for index, entry in enumerate(attachments):
                if isinstance(entry, dict) and entry.get("id") == attachment_id:
                    break
            else:
                return False

            attachments[index] = updater(dict(entry))
            conn.execute(
                update(Lead)
                .where(Lead.id == lead_id)
                .values(attachments=json.dumps(attachments), updatedAt=datetime.utcnow())
            )
        return True
