from __future__ import annotations

"""Abstract base classes for job claiming and attachment storage.

The worker only depends on these two seams: how a pending job file becomes
owned by a worker, and how a finished job is reported back to the business
record that owns the attachment.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterator


class ClaimStrategy(ABC):
    """Moves a job file out of ``pending`` into a worker-owned location.

    Implementations must guarantee:
    - At most one caller succeeds for a given pending file
    - Losers raise FileNotFoundError (the source is already gone)
    - The claimed file is complete (never partially written)
    """

    @abstractmethod
    def claim(self, pending_path: Path) -> Path:
        """Atomically take ownership of a pending job file.

        Args:
            pending_path: ``pending/<jobId>.json``

        Returns:
            Path of the claimed file

        Raises:
            FileNotFoundError: If another claimer moved the file first
        """
        pass

    @abstractmethod
    def claimed_files(self) -> Iterator[Path]:
        """Yield every job file currently held in processing.

        Used for orphan recovery and statistics, so it must cover all
        locations this strategy can claim into.
        """
        pass


class AttachmentStore(ABC):
    """Lookup-by-id-then-update-in-place on a lead's attachment list.

    This is the only dependency the worker has on the business schema.
    """

    @abstractmethod
    def update_attachment(
        self,
        lead_id: str,
        attachment_id: str,
        updater: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> bool:
        """Replace one attachment entry with ``updater(entry)``.

        Args:
            lead_id: Owning lead
            attachment_id: Attachment ``id`` inside the lead's list
            updater: Receives a copy of the current entry, returns the new one

        Returns:
            False if the lead or the attachment no longer exists

        Implementation notes:
        - Sibling attachments and other lead fields must be left untouched
        - Should hold a row lock (or equivalent) across read and write
        """
        pass
