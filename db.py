import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import aiosqlite

from irv import Ballot, Option, Ranking, TallyResult, tally
from validation import clean_poll_input, validate_rankings

STATUSES = ("draft", "published", "closed")


class PollError(Exception):
    pass


class PollNotFound(PollError):
    pass


class PollStateError(PollError):
    pass


@dataclass(frozen=True)
class PollRecord:
    id: int
    creator_id: int
    title: str
    description: Optional[str]
    status: str
    share_link: Optional[str]
    created_at: str
    ballot_count: int = 0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# SQLite слой
# =========================

class Database:
    def __init__(self, path: str = "bot.sqlite3") -> None:
        self.path = path
        self.conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA journal_mode=WAL;")
        await self.conn.execute("PRAGMA foreign_keys=ON;")

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def init(self) -> None:
        assert self.conn is not None

        await self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS polls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                creator_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'draft',
                share_link TEXT UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS options (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                poll_id INTEGER NOT NULL REFERENCES polls(id) ON DELETE CASCADE,
                text TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ballots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                poll_id INTEGER NOT NULL REFERENCES polls(id) ON DELETE CASCADE,
                user_id INTEGER,
                username TEXT,
                submitted_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rankings (
                ballot_id INTEGER NOT NULL REFERENCES ballots(id) ON DELETE CASCADE,
                option_id INTEGER NOT NULL REFERENCES options(id) ON DELETE CASCADE,
                rank INTEGER NOT NULL CHECK (rank >= 1)
            );

            CREATE TABLE IF NOT EXISTS sessions (
                user_id INTEGER NOT NULL,
                poll_id INTEGER NOT NULL,
                selected_json TEXT NOT NULL,
                unselected_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, poll_id)
            );
            """
        )
        await self.conn.commit()

    # ---------- опросы ----------

    async def create_poll(
        self,
        creator_id: int,
        title: str,
        option_texts: Sequence[str],
        description: Optional[str] = None,
    ) -> int:
        assert self.conn is not None
        title, texts = clean_poll_input(title, option_texts)
        description = (description or "").strip() or None

        # опрос и варианты одной транзакцией
        try:
            cur = await self.conn.execute(
                """
                INSERT INTO polls (creator_id, title, description, status, created_at)
                VALUES (?, ?, ?, 'draft', ?)
                """,
                (creator_id, title, description, _now()),
            )
            poll_id = cur.lastrowid
            await self.conn.executemany(
                "INSERT INTO options (poll_id, text) VALUES (?, ?)",
                [(poll_id, t) for t in texts],
            )
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise

        logging.info(f"poll {poll_id} created by {creator_id} with {len(texts)} options")
        return poll_id

    @staticmethod
    def _poll_from_row(row: aiosqlite.Row) -> PollRecord:
        return PollRecord(
            id=int(row["id"]),
            creator_id=int(row["creator_id"]),
            title=row["title"],
            description=row["description"],
            status=row["status"],
            share_link=row["share_link"],
            created_at=row["created_at"],
            ballot_count=int(row["ballot_count"]),
        )

    _POLL_SELECT = """
        SELECT p.*, (SELECT COUNT(*) FROM ballots b WHERE b.poll_id = p.id) AS ballot_count
        FROM polls p
    """

    async def get_poll(self, poll_id: int, creator_id: Optional[int] = None) -> PollRecord:
        assert self.conn is not None
        cur = await self.conn.execute(self._POLL_SELECT + " WHERE p.id = ?", (poll_id,))
        row = await cur.fetchone()
        # чужой опрос выглядит так же, как несуществующий
        if row is None or (creator_id is not None and int(row["creator_id"]) != creator_id):
            raise PollNotFound("Poll not found")
        return self._poll_from_row(row)

    async def get_published_poll(self, share_link: str) -> PollRecord:
        assert self.conn is not None
        cur = await self.conn.execute(
            self._POLL_SELECT + " WHERE p.share_link = ? AND p.status = 'published'",
            (share_link,),
        )
        row = await cur.fetchone()
        if row is None:
            raise PollNotFound("Poll not found or no longer accepting votes")
        return self._poll_from_row(row)

    async def list_polls(self, creator_id: int) -> List[PollRecord]:
        assert self.conn is not None
        cur = await self.conn.execute(
            self._POLL_SELECT + " WHERE p.creator_id = ? ORDER BY p.created_at DESC, p.id DESC",
            (creator_id,),
        )
        rows = await cur.fetchall()
        return [self._poll_from_row(r) for r in rows]

    async def update_poll(
        self,
        poll_id: int,
        creator_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None,
    ) -> PollRecord:
        assert self.conn is not None
        poll = await self.get_poll(poll_id, creator_id)
        if poll.status == "closed":
            raise PollStateError("Cannot update a closed poll")

        new_title = poll.title
        if title and title.strip():
            new_title = title.strip()
        new_description = poll.description
        if description is not None:
            new_description = description.strip() or None

        new_status = poll.status
        share_link = poll.share_link
        if status:
            if status not in STATUSES:
                raise PollStateError("Invalid status")
            new_status = status
            # ссылка выдаётся один раз, при первой публикации
            if status == "published" and not share_link:
                share_link = secrets.token_hex(16)

        await self.conn.execute(
            "UPDATE polls SET title = ?, description = ?, status = ?, share_link = ? WHERE id = ?",
            (new_title, new_description, new_status, share_link, poll_id),
        )
        await self.conn.commit()

        if new_status != poll.status:
            logging.info(f"poll {poll_id}: {poll.status} -> {new_status}")
        return await self.get_poll(poll_id)

    async def close_poll(self, poll_id: int, creator_id: int) -> PollRecord:
        assert self.conn is not None
        poll = await self.get_poll(poll_id, creator_id)
        if poll.status == "closed":
            raise PollStateError("Poll is already closed")

        await self.conn.execute("UPDATE polls SET status = 'closed' WHERE id = ?", (poll_id,))
        await self.conn.commit()
        logging.info(f"poll {poll_id} closed")
        return await self.get_poll(poll_id)

    async def get_options(self, poll_id: int) -> List[Option]:
        assert self.conn is not None
        cur = await self.conn.execute(
            "SELECT id, text FROM options WHERE poll_id = ? ORDER BY id ASC",
            (poll_id,),
        )
        rows = await cur.fetchall()
        return [Option(id=int(r["id"]), text=r["text"]) for r in rows]

    async def get_options_map(self, poll_id: int) -> Dict[int, Option]:
        return {o.id: o for o in await self.get_options(poll_id)}

    # ---------- бюллетени ----------

    async def add_ballot(
        self,
        poll_id: int,
        user_id: Optional[int],
        username: Optional[str],
        rankings: Sequence[Ranking],
    ) -> int:
        assert self.conn is not None
        poll = await self.get_poll(poll_id)
        if poll.status != "published":
            raise PollNotFound("Poll not found or no longer accepting votes")

        options = await self.get_options(poll_id)
        validate_rankings([o.id for o in options], rankings)

        try:
            # повторный голос заменяет предыдущий (rankings уходят каскадом)
            if user_id is not None:
                await self.conn.execute(
                    "DELETE FROM ballots WHERE poll_id = ? AND user_id = ?",
                    (poll_id, user_id),
                )
            cur = await self.conn.execute(
                "INSERT INTO ballots (poll_id, user_id, username, submitted_at) VALUES (?, ?, ?, ?)",
                (poll_id, user_id, username, _now()),
            )
            ballot_id = cur.lastrowid
            await self.conn.executemany(
                "INSERT INTO rankings (ballot_id, option_id, rank) VALUES (?, ?, ?)",
                [(ballot_id, r.option_id, r.rank) for r in rankings],
            )
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise

        logging.info(f"ballot {ballot_id} accepted for poll {poll_id}")
        return ballot_id

    async def get_ballots(self, poll_id: int) -> List[Ballot]:
        assert self.conn is not None
        cur = await self.conn.execute(
            """
            SELECT b.id AS ballot_id, r.option_id, r.rank
            FROM ballots b
            JOIN rankings r ON r.ballot_id = b.id
            WHERE b.poll_id = ?
            ORDER BY b.id ASC, r.rank ASC
            """,
            (poll_id,),
        )
        rows = await cur.fetchall()

        grouped: Dict[int, List[Ranking]] = {}
        for r in rows:
            grouped.setdefault(int(r["ballot_id"]), []).append(
                Ranking(option=int(r["option_id"]), rank=int(r["rank"]))
            )
        return [Ballot(id=bid, rankings=tuple(rs)) for bid, rs in grouped.items()]

    async def tally_poll(
        self, poll_id: int, creator_id: Optional[int] = None
    ) -> Tuple[PollRecord, List[Option], TallyResult]:
        poll = await self.get_poll(poll_id, creator_id)
        options = await self.get_options(poll_id)
        ballots = await self.get_ballots(poll_id)
        return poll, options, tally(options, ballots)

    # ---------- сессии ранжирования ----------

    async def upsert_session(self, user_id: int, poll_id: int, selected: List[int], unselected: List[int]) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """
            INSERT INTO sessions (user_id, poll_id, selected_json, unselected_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id, poll_id) DO UPDATE SET
                selected_json = excluded.selected_json,
                unselected_json = excluded.unselected_json
            """,
            (user_id, poll_id, json.dumps(selected), json.dumps(unselected), _now()),
        )
        await self.conn.commit()

    async def get_session(self, user_id: int, poll_id: int) -> Optional[Tuple[List[int], List[int]]]:
        assert self.conn is not None
        cur = await self.conn.execute(
            "SELECT selected_json, unselected_json FROM sessions WHERE user_id = ? AND poll_id = ?",
            (user_id, poll_id),
        )
        row = await cur.fetchone()
        if not row:
            return None
        return json.loads(row["selected_json"]), json.loads(row["unselected_json"])

    async def delete_session(self, user_id: int, poll_id: int) -> None:
        assert self.conn is not None
        await self.conn.execute(
            "DELETE FROM sessions WHERE user_id = ? AND poll_id = ?",
            (user_id, poll_id),
        )
        await self.conn.commit()
