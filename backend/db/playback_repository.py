"""
Repository for playback persistence

Three concerns, three tables:
- playback_snapshots: queue content + position per book (heavy, rewritten
  only when the queue itself changes)
- playback_state: last played location + pause timestamp (smart resume)
- reading_history: locations narrated, with completion flag
"""
import json
import sqlite3
from typing import List, Optional, Dict, Any
from datetime import datetime
from loguru import logger

from config import DB_READING_HISTORY_LIMIT
from models.playback_models import PersistedSnapshot, QueueItem


def dict_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    """Convert sqlite3.Row to dictionary"""
    return dict(row)


class PlaybackRepository:
    """Repository for playback snapshot, state and reading history operations."""

    def __init__(self, db):
        self.db = db
        self.cursor = db.cursor()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_queue_snapshot(
        self,
        book_id: str,
        queue: List[QueueItem],
        current_index: int,
        current_section_index: int
    ) -> None:
        """Write queue content and position (full snapshot)."""
        queue_json = json.dumps([item.model_dump(mode="json", by_alias=True) for item in queue])
        try:
            self.cursor.execute("""
                INSERT INTO playback_snapshots (
                    book_id, queue_json, current_index, current_section_index, updated_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(book_id) DO UPDATE SET
                    queue_json = excluded.queue_json,
                    current_index = excluded.current_index,
                    current_section_index = excluded.current_section_index,
                    updated_at = excluded.updated_at
            """, (book_id, queue_json, current_index, current_section_index, datetime.now().isoformat()))
            self.db.commit()
            logger.trace(f"[PlaybackRepository] Snapshot saved for {book_id} ({len(queue)} items)")
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to save playback snapshot for {book_id}: {e}")
            raise

    def save_position_only(self, book_id: str, current_index: int, current_section_index: int) -> bool:
        """
        Write only the position fields.

        Returns:
            False if no snapshot exists yet for the book
        """
        try:
            self.cursor.execute("""
                UPDATE playback_snapshots
                SET current_index = ?, current_section_index = ?, updated_at = ?
                WHERE book_id = ?
            """, (current_index, current_section_index, datetime.now().isoformat(), book_id))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to save playback position for {book_id}: {e}")
            raise

        if self.cursor.rowcount == 0:
            logger.debug(f"[PlaybackRepository] No snapshot for {book_id}, position not saved")
            return False
        return True

    def load_last_snapshot(self, book_id: str) -> Optional[PersistedSnapshot]:
        """Load the stored session for a book, or None."""
        self.cursor.execute("""
            SELECT s.book_id, s.queue_json, s.current_index, s.current_section_index,
                   p.last_played_location_id, p.last_pause_time
            FROM playback_snapshots s
            LEFT JOIN playback_state p ON p.book_id = s.book_id
            WHERE s.book_id = ?
        """, (book_id,))

        row = self.cursor.fetchone()
        if not row:
            return None

        data = dict_from_row(row)
        try:
            queue = [QueueItem.model_validate(item) for item in json.loads(data['queue_json'])]
        except (ValueError, TypeError) as e:
            logger.warning(f"[PlaybackRepository] Corrupt snapshot for {book_id}, ignoring: {e}")
            return None

        return PersistedSnapshot(
            book_id=data['book_id'],
            queue=queue,
            current_index=data['current_index'],
            current_section_index=data['current_section_index'],
            last_played_location_id=data['last_played_location_id'],
            last_pause_time=data['last_pause_time']
        )

    def delete_snapshot(self, book_id: str) -> bool:
        """Delete snapshot and playback state of a book."""
        self.cursor.execute("DELETE FROM playback_snapshots WHERE book_id = ?", (book_id,))
        deleted = self.cursor.rowcount > 0
        self.cursor.execute("DELETE FROM playback_state WHERE book_id = ?", (book_id,))
        self.db.commit()
        return deleted

    # ------------------------------------------------------------------
    # Playback state
    # ------------------------------------------------------------------

    def update_playback_state(
        self,
        book_id: str,
        last_played_location_id: Optional[str],
        last_pause_time: Optional[float]
    ) -> None:
        """Store the last played location and pause timestamp (None = not paused)."""
        try:
            self.cursor.execute("""
                INSERT INTO playback_state (
                    book_id, last_played_location_id, last_pause_time, updated_at
                ) VALUES (?, ?, ?, ?)
                ON CONFLICT(book_id) DO UPDATE SET
                    last_played_location_id = COALESCE(excluded.last_played_location_id, last_played_location_id),
                    last_pause_time = excluded.last_pause_time,
                    updated_at = excluded.updated_at
            """, (book_id, last_played_location_id, last_pause_time, datetime.now().isoformat()))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update playback state for {book_id}: {e}")
            raise

    def get_playback_state(self, book_id: str) -> Optional[Dict[str, Any]]:
        self.cursor.execute("""
            SELECT * FROM playback_state WHERE book_id = ?
        """, (book_id,))
        row = self.cursor.fetchone()
        return dict_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Reading history
    # ------------------------------------------------------------------

    def update_reading_history(
        self,
        book_id: str,
        location_id: str,
        source: str = "tts",
        label: Optional[str] = None,
        completed: bool = False
    ) -> None:
        """
        Record that a location was narrated.

        Repeated reports for the latest entry update it instead of adding a row;
        once completed, an entry stays completed.
        """
        try:
            self.cursor.execute("""
                SELECT id, location_id, source, completed FROM reading_history
                WHERE book_id = ?
                ORDER BY id DESC
                LIMIT 1
            """, (book_id,))
            latest = self.cursor.fetchone()

            if latest and latest['location_id'] == location_id and latest['source'] == source:
                self.cursor.execute("""
                    UPDATE reading_history
                    SET completed = ?, label = COALESCE(?, label)
                    WHERE id = ?
                """, (bool(latest['completed']) or completed, label, latest['id']))
            else:
                self.cursor.execute("""
                    INSERT INTO reading_history (
                        book_id, location_id, source, label, completed, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                """, (book_id, location_id, source, label, completed, datetime.now().isoformat()))

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update reading history for {book_id}: {e}")
            raise

    def get_reading_history(self, book_id: str, limit: int = DB_READING_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        """Reading history of a book, newest first."""
        self.cursor.execute("""
            SELECT * FROM reading_history
            WHERE book_id = ?
            ORDER BY id DESC
            LIMIT ?
        """, (book_id, limit))

        entries = []
        for row in self.cursor.fetchall():
            entry = dict_from_row(row)
            entry['completed'] = bool(entry['completed'])
            entries.append(entry)
        return entries
