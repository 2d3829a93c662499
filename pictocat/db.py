from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from .config import DB_PATH, DEFAULTS, TUNABLE_SETTINGS


USER_COLUMNS = {"username", "email", "role", "is_verified", "schema_version"}
USER_DATA_COUNTERS = {"coins", "trade_notifications"}
IMAGE_COLUMNS = {"url", "theme", "rarity", "is_shiny"}
ENVELOPE_FIELDS = (
    "name",
    "base_cost",
    "cost_increase_per_level",
    "image_count",
    "color",
    "description",
    "xp",
    "is_featured",
    "cat_theme_pool",
)
UPGRADE_FIELDS = ("name", "description", "cost", "level_required", "icon")


def ordered_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class Database:
    def __init__(self, path=DB_PATH):
        self.path = str(path)
        self.conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA foreign_keys = ON")
        await self.conn.execute("PRAGMA journal_mode = WAL")
        await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def init(self) -> None:
        assert self.conn is not None
        await self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT UNIQUE NOT NULL,
                email TEXT,
                role TEXT NOT NULL DEFAULT 'user',
                is_verified INTEGER NOT NULL DEFAULT 0,
                schema_version INTEGER NOT NULL DEFAULT 0,
                data_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS cat_images (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL,
                theme TEXT NOT NULL DEFAULT '',
                rarity TEXT,
                is_shiny INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS cat_images_theme_idx
                ON cat_images(theme);

            CREATE TABLE IF NOT EXISTS envelopes (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                base_cost INTEGER NOT NULL,
                cost_increase_per_level INTEGER NOT NULL DEFAULT 0,
                image_count INTEGER NOT NULL,
                color TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                xp INTEGER NOT NULL DEFAULT 0,
                is_featured INTEGER NOT NULL DEFAULT 0,
                cat_theme_pool_json TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS upgrades (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                cost INTEGER NOT NULL,
                level_required INTEGER NOT NULL DEFAULT 1,
                icon TEXT NOT NULL DEFAULT 'coin'
            );

            CREATE TABLE IF NOT EXISTS friendships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user1_id TEXT NOT NULL,
                user2_id TEXT NOT NULL,
                level INTEGER NOT NULL DEFAULT 1,
                xp INTEGER NOT NULL DEFAULT 0,
                active_mission_json TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user1_id, user2_id)
            );

            CREATE INDEX IF NOT EXISTS friendships_user2_idx
                ON friendships(user2_id);

            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_user_id TEXT NOT NULL,
                to_user_id TEXT NOT NULL,
                offered_json TEXT NOT NULL,
                requested_json TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                reason TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS trades_status_idx
                ON trades(status, from_user_id, to_user_id);

            CREATE TABLE IF NOT EXISTS public_phrases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                phrase_id TEXT NOT NULL,
                text TEXT NOT NULL,
                image_url TEXT NOT NULL,
                image_theme TEXT NOT NULL DEFAULT '',
                username TEXT NOT NULL,
                is_user_verified INTEGER NOT NULL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, phrase_id)
            );

            CREATE TABLE IF NOT EXISTS phrase_likes (
                public_phrase_id INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY(public_phrase_id, user_id),
                FOREIGN KEY(public_phrase_id) REFERENCES public_phrases(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL
            );
            """
        )
        await self._ensure_column("cat_images", "is_shiny", "INTEGER NOT NULL DEFAULT 0")
        await self._ensure_column("envelopes", "xp", "INTEGER NOT NULL DEFAULT 0")
        await self._ensure_column("trades", "reason", "TEXT")
        await self.conn.commit()

    # -- transactions --------------------------------------------------

    def _owns_tx(self) -> bool:
        return self._tx_owner is not None and self._tx_owner is asyncio.current_task()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Database"]:
        """Run the enclosed statements as one sqlite transaction.

        Other tasks queue on the lock until the transaction finishes, so a
        read followed by a write inside the block cannot interleave with a
        concurrent request. Nested use joins the outer transaction.
        """
        assert self.conn is not None
        if self._owns_tx():
            yield self
            return
        async with self._lock:
            self._tx_owner = asyncio.current_task()
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()
            finally:
                self._tx_owner = None

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        if self._owns_tx():
            yield
        else:
            async with self._lock:
                yield

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        assert self.conn is not None
        if self._owns_tx():
            return await self.conn.execute(query, params)
        async with self._lock:
            cursor = await self.conn.execute(query, params)
            await self.conn.commit()
            return cursor

    async def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        assert self.conn is not None
        async with self._guard():
            async with self.conn.execute(query, params) as cursor:
                return await cursor.fetchone()

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        assert self.conn is not None
        async with self._guard():
            async with self.conn.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    # -- users ---------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM users WHERE username = ?", (username,))
        return self._row_to_user(row) if row else None

    async def username_taken(self, username: str, exclude_id: Optional[str] = None) -> bool:
        row = await self._fetchone(
            "SELECT id FROM users WHERE username = ? AND id != ?",
            (username, exclude_id or ""),
        )
        return row is not None

    async def get_users(self, user_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        rows = await self._fetchall(f"SELECT * FROM users WHERE id IN ({marks})", ids)
        return [self._row_to_user(row) for row in rows]

    async def list_users(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall("SELECT * FROM users ORDER BY username", ())
        return [self._row_to_user(row) for row in rows]

    async def search_users(self, prefix: str, limit: int) -> List[Dict[str, Any]]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = await self._fetchall(
            """
            SELECT id, username, is_verified
            FROM users
            WHERE username LIKE ? ESCAPE '\\'
            ORDER BY username
            LIMIT ?
            """,
            (f"{escaped}%", limit),
        )
        return [
            {"id": row["id"], "username": row["username"], "is_verified": bool(row["is_verified"])}
            for row in rows
        ]

    async def create_user(self, user: Dict[str, Any]) -> None:
        await self._execute(
            """
            INSERT INTO users (id, username, email, role, is_verified, schema_version, data_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user["id"],
                user["username"],
                user.get("email"),
                user.get("role", "user"),
                1 if user.get("is_verified") else 0,
                int(user.get("schema_version", 0)),
                json.dumps(user.get("data") or {}, ensure_ascii=False),
            ),
        )

    async def update_user(self, user_id: str, **fields: Any) -> None:
        unknown = set(fields) - USER_COLUMNS
        if unknown:
            raise ValueError(f"unknown user columns: {sorted(unknown)}")
        if not fields:
            return
        if "is_verified" in fields:
            fields["is_verified"] = 1 if fields["is_verified"] else 0
        cols = ", ".join(f"{k} = ?" for k in fields.keys())
        await self._execute(
            f"UPDATE users SET {cols} WHERE id = ?",
            (*fields.values(), user_id),
        )

    async def update_user_data(self, user_id: str, data: Dict[str, Any]) -> None:
        await self._execute(
            "UPDATE users SET data_json = ? WHERE id = ?",
            (json.dumps(data, ensure_ascii=False), user_id),
        )

    async def increment_user_counter(self, user_id: str, field: str, delta: int) -> None:
        if field not in USER_DATA_COUNTERS:
            raise ValueError(f"{field} is not a counter")
        path = f"$.{field}"
        await self._execute(
            """
            UPDATE users
            SET data_json = json_set(
                data_json, ?, MAX(0, COALESCE(json_extract(data_json, ?), 0) + ?)
            )
            WHERE id = ?
            """,
            (path, path, delta, user_id),
        )

    async def set_user_counter(self, user_id: str, field: str, value: int) -> None:
        if field not in USER_DATA_COUNTERS:
            raise ValueError(f"{field} is not a counter")
        await self._execute(
            "UPDATE users SET data_json = json_set(data_json, ?, ?) WHERE id = ?",
            (f"$.{field}", value, user_id),
        )

    # -- catalog -------------------------------------------------------

    async def list_images(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall("SELECT * FROM cat_images ORDER BY id", ())
        return [self._row_to_image(row) for row in rows]

    async def get_images(self, image_ids: Iterable[int]) -> List[Dict[str, Any]]:
        ids = list(dict.fromkeys(int(i) for i in image_ids))
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        rows = await self._fetchall(
            f"SELECT * FROM cat_images WHERE id IN ({marks}) ORDER BY id", ids
        )
        return [self._row_to_image(row) for row in rows]

    async def get_image(self, image_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM cat_images WHERE id = ?", (image_id,))
        return self._row_to_image(row) if row else None

    async def create_image(
        self, url: str, theme: str, rarity: str = "common", is_shiny: bool = False
    ) -> int:
        cursor = await self._execute(
            "INSERT INTO cat_images (url, theme, rarity, is_shiny) VALUES (?, ?, ?, ?)",
            (url, theme, rarity, 1 if is_shiny else 0),
        )
        return int(cursor.lastrowid)

    async def update_image(self, image_id: int, **fields: Any) -> bool:
        unknown = set(fields) - IMAGE_COLUMNS
        if unknown:
            raise ValueError(f"unknown image columns: {sorted(unknown)}")
        if not fields:
            return await self.get_image(image_id) is not None
        if "is_shiny" in fields:
            fields["is_shiny"] = 1 if fields["is_shiny"] else 0
        cols = ", ".join(f"{k} = ?" for k in fields.keys())
        cursor = await self._execute(
            f"UPDATE cat_images SET {cols} WHERE id = ?",
            (*fields.values(), image_id),
        )
        return cursor.rowcount > 0

    async def delete_image(self, image_id: int) -> bool:
        cursor = await self._execute("DELETE FROM cat_images WHERE id = ?", (image_id,))
        return cursor.rowcount > 0

    async def backfill_image_rarity(self) -> int:
        cursor = await self._execute(
            "UPDATE cat_images SET rarity = 'common' WHERE rarity IS NULL OR rarity = ''",
            (),
        )
        return cursor.rowcount

    async def list_envelopes(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall("SELECT * FROM envelopes ORDER BY base_cost, id", ())
        return [self._row_to_envelope(row) for row in rows]

    async def get_envelope(self, envelope_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM envelopes WHERE id = ?", (envelope_id,))
        return self._row_to_envelope(row) if row else None

    async def upsert_envelope(self, envelope: Dict[str, Any]) -> None:
        await self._execute(
            """
            INSERT INTO envelopes (
                id, name, base_cost, cost_increase_per_level, image_count,
                color, description, xp, is_featured, cat_theme_pool_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                base_cost = excluded.base_cost,
                cost_increase_per_level = excluded.cost_increase_per_level,
                image_count = excluded.image_count,
                color = excluded.color,
                description = excluded.description,
                xp = excluded.xp,
                is_featured = excluded.is_featured,
                cat_theme_pool_json = excluded.cat_theme_pool_json
            """,
            (
                envelope["id"],
                envelope["name"],
                int(envelope["base_cost"]),
                int(envelope.get("cost_increase_per_level", 0)),
                int(envelope["image_count"]),
                envelope.get("color", ""),
                envelope.get("description", ""),
                int(envelope.get("xp", 0)),
                1 if envelope.get("is_featured") else 0,
                json.dumps(list(envelope.get("cat_theme_pool") or []), ensure_ascii=False),
            ),
        )

    async def delete_envelope(self, envelope_id: str) -> bool:
        cursor = await self._execute("DELETE FROM envelopes WHERE id = ?", (envelope_id,))
        return cursor.rowcount > 0

    async def list_upgrades(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall("SELECT * FROM upgrades ORDER BY level_required, id", ())
        return [dict(row) for row in rows]

    async def get_upgrade(self, upgrade_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM upgrades WHERE id = ?", (upgrade_id,))
        return dict(row) if row else None

    async def upsert_upgrade(self, upgrade: Dict[str, Any]) -> None:
        await self._execute(
            """
            INSERT INTO upgrades (id, name, description, cost, level_required, icon)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                cost = excluded.cost,
                level_required = excluded.level_required,
                icon = excluded.icon
            """,
            (
                upgrade["id"],
                upgrade["name"],
                upgrade.get("description", ""),
                int(upgrade["cost"]),
                int(upgrade.get("level_required", 1)),
                upgrade.get("icon", "coin"),
            ),
        )

    async def delete_upgrade(self, upgrade_id: str) -> bool:
        cursor = await self._execute("DELETE FROM upgrades WHERE id = ?", (upgrade_id,))
        return cursor.rowcount > 0

    async def seed_catalog(self, seed: Dict[str, Any]) -> Dict[str, int]:
        created = {"envelopes": 0, "upgrades": 0, "images": 0}
        async with self.transaction():
            if not await self.list_envelopes():
                for envelope in seed.get("envelopes", []):
                    await self.upsert_envelope(envelope)
                    created["envelopes"] += 1
            if not await self.list_upgrades():
                for upgrade in seed.get("upgrades", []):
                    await self.upsert_upgrade(upgrade)
                    created["upgrades"] += 1
            row = await self._fetchone("SELECT COUNT(1) AS total FROM cat_images", ())
            if row and int(row["total"]) == 0:
                for image in seed.get("images", []):
                    await self.create_image(
                        image["url"],
                        image.get("theme", ""),
                        image.get("rarity", "common"),
                        bool(image.get("is_shiny")),
                    )
                    created["images"] += 1
        return created

    # -- friendships ---------------------------------------------------

    async def get_friendship(self, friendship_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM friendships WHERE id = ?", (friendship_id,))
        return self._row_to_friendship(row) if row else None

    async def get_friendship_between(
        self, user_a: str, user_b: str
    ) -> Optional[Dict[str, Any]]:
        first, second = ordered_pair(user_a, user_b)
        row = await self._fetchone(
            "SELECT * FROM friendships WHERE user1_id = ? AND user2_id = ?",
            (first, second),
        )
        return self._row_to_friendship(row) if row else None

    async def create_friendship(self, user_a: str, user_b: str) -> Dict[str, Any]:
        first, second = ordered_pair(user_a, user_b)
        await self._execute(
            "INSERT OR IGNORE INTO friendships (user1_id, user2_id) VALUES (?, ?)",
            (first, second),
        )
        friendship = await self.get_friendship_between(first, second)
        assert friendship is not None
        return friendship

    async def delete_friendship_between(self, user_a: str, user_b: str) -> bool:
        first, second = ordered_pair(user_a, user_b)
        cursor = await self._execute(
            "DELETE FROM friendships WHERE user1_id = ? AND user2_id = ?",
            (first, second),
        )
        return cursor.rowcount > 0

    async def list_friendships(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT * FROM friendships
            WHERE user1_id = ? OR user2_id = ?
            ORDER BY id
            """,
            (user_id, user_id),
        )
        return [self._row_to_friendship(row) for row in rows]

    async def update_friendship(
        self,
        friendship_id: int,
        level: int,
        xp: int,
        active_mission: Optional[Dict[str, Any]],
    ) -> None:
        await self._execute(
            """
            UPDATE friendships
            SET level = ?, xp = ?, active_mission_json = ?
            WHERE id = ?
            """,
            (
                level,
                xp,
                json.dumps(active_mission, ensure_ascii=False) if active_mission is not None else None,
                friendship_id,
            ),
        )

    # -- trades --------------------------------------------------------

    async def create_trade(
        self,
        from_user_id: str,
        to_user_id: str,
        offered_image_ids: List[int],
        requested_image_ids: List[int],
    ) -> int:
        cursor = await self._execute(
            """
            INSERT INTO trades (from_user_id, to_user_id, offered_json, requested_json)
            VALUES (?, ?, ?, ?)
            """,
            (
                from_user_id,
                to_user_id,
                json.dumps(offered_image_ids, ensure_ascii=False),
                json.dumps(requested_image_ids, ensure_ascii=False),
            ),
        )
        return int(cursor.lastrowid)

    async def get_trade(self, trade_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM trades WHERE id = ?", (trade_id,))
        return self._row_to_trade(row) if row else None

    async def list_pending_trades(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT * FROM trades
            WHERE status = 'pending' AND (from_user_id = ? OR to_user_id = ?)
            ORDER BY id DESC
            """,
            (user_id, user_id),
        )
        return [self._row_to_trade(row) for row in rows]

    async def list_trades(
        self, status: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        if status:
            rows = await self._fetchall(
                "SELECT * FROM trades WHERE status = ? ORDER BY id DESC LIMIT ?",
                (status, limit),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM trades ORDER BY id DESC LIMIT ?",
                (limit,),
            )
        return [self._row_to_trade(row) for row in rows]

    async def update_trade_status(
        self, trade_id: int, status: str, reason: Optional[str] = None
    ) -> None:
        await self._execute(
            """
            UPDATE trades
            SET status = ?, reason = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (status, reason, trade_id),
        )

    # -- public phrases ------------------------------------------------

    async def upsert_public_phrase(self, phrase: Dict[str, Any]) -> None:
        await self._execute(
            """
            INSERT INTO public_phrases (
                user_id, phrase_id, text, image_url, image_theme, username, is_user_verified
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, phrase_id) DO UPDATE SET
                text = excluded.text,
                image_url = excluded.image_url,
                image_theme = excluded.image_theme,
                username = excluded.username,
                is_user_verified = excluded.is_user_verified
            """,
            (
                phrase["user_id"],
                phrase["phrase_id"],
                phrase["text"],
                phrase["image_url"],
                phrase.get("image_theme", ""),
                phrase["username"],
                1 if phrase.get("is_user_verified") else 0,
            ),
        )

    async def delete_public_phrases_except(
        self, user_id: str, keep_phrase_ids: Iterable[str]
    ) -> int:
        keep = list(keep_phrase_ids)
        if keep:
            marks = ", ".join("?" for _ in keep)
            cursor = await self._execute(
                f"DELETE FROM public_phrases WHERE user_id = ? AND phrase_id NOT IN ({marks})",
                (user_id, *keep),
            )
        else:
            cursor = await self._execute(
                "DELETE FROM public_phrases WHERE user_id = ?",
                (user_id,),
            )
        return cursor.rowcount

    async def get_public_phrase(self, public_phrase_id: int) -> Optional[Dict[str, Any]]:
        row = await self._fetchone(
            f"{self._PHRASE_SELECT} WHERE p.id = ?",
            (public_phrase_id,),
        )
        return self._row_to_public_phrase(row) if row else None

    async def list_public_phrases(
        self, limit: Optional[int] = None, user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query = self._PHRASE_SELECT
        params: List[Any] = []
        if user_id is not None:
            query += " WHERE p.user_id = ?"
            params.append(user_id)
        query += " ORDER BY p.id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await self._fetchall(query, params)
        return [self._row_to_public_phrase(row) for row in rows]

    async def delete_public_phrase(self, public_phrase_id: int) -> bool:
        cursor = await self._execute(
            "DELETE FROM public_phrases WHERE id = ?",
            (public_phrase_id,),
        )
        return cursor.rowcount > 0

    async def update_public_phrase_author(self, user_id: str, **fields: Any) -> None:
        if "username" in fields:
            await self._execute(
                "UPDATE public_phrases SET username = ? WHERE user_id = ?",
                (fields["username"], user_id),
            )
        if "is_user_verified" in fields:
            await self._execute(
                "UPDATE public_phrases SET is_user_verified = ? WHERE user_id = ?",
                (1 if fields["is_user_verified"] else 0, user_id),
            )

    async def liked_phrase_ids(self, user_id: str, phrase_ids: Iterable[int]) -> set[int]:
        ids = list(phrase_ids)
        if not ids:
            return set()
        marks = ", ".join("?" for _ in ids)
        rows = await self._fetchall(
            f"""
            SELECT public_phrase_id FROM phrase_likes
            WHERE user_id = ? AND public_phrase_id IN ({marks})
            """,
            (user_id, *ids),
        )
        return {int(row["public_phrase_id"]) for row in rows}

    async def add_like(self, public_phrase_id: int, user_id: str) -> bool:
        cursor = await self._execute(
            "INSERT OR IGNORE INTO phrase_likes (public_phrase_id, user_id) VALUES (?, ?)",
            (public_phrase_id, user_id),
        )
        return cursor.rowcount > 0

    async def remove_like(self, public_phrase_id: int, user_id: str) -> bool:
        cursor = await self._execute(
            "DELETE FROM phrase_likes WHERE public_phrase_id = ? AND user_id = ?",
            (public_phrase_id, user_id),
        )
        return cursor.rowcount > 0

    async def count_likes(self, public_phrase_id: int) -> int:
        row = await self._fetchone(
            "SELECT COUNT(1) AS total FROM phrase_likes WHERE public_phrase_id = ?",
            (public_phrase_id,),
        )
        return int(row["total"]) if row else 0

    # -- settings ------------------------------------------------------

    async def get_settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {key: getattr(DEFAULTS, key) for key in TUNABLE_SETTINGS}
        rows = await self._fetchall("SELECT key, value_json FROM settings", ())
        for row in rows:
            key = row["key"]
            if key not in settings:
                continue
            default = settings[key]
            settings[key] = type(default)(json.loads(row["value_json"]))
        return settings

    async def update_settings(self, **kwargs: Any) -> Dict[str, Any]:
        unknown = set(kwargs) - set(TUNABLE_SETTINGS)
        if unknown:
            raise ValueError(f"unknown settings: {sorted(unknown)}")
        async with self.transaction():
            for key, value in kwargs.items():
                await self._execute(
                    """
                    INSERT INTO settings (key, value_json) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json
                    """,
                    (key, json.dumps(value, ensure_ascii=False)),
                )
        return await self.get_settings()

    # -- row helpers ---------------------------------------------------

    _PHRASE_SELECT = """
        SELECT p.*,
               (SELECT COUNT(1) FROM phrase_likes l WHERE l.public_phrase_id = p.id)
                   AS like_count
        FROM public_phrases p
    """

    def _row_to_user(self, row: aiosqlite.Row) -> Dict[str, Any]:
        data = json.loads(row["data_json"]) if row["data_json"] else {}
        return {
            "id": row["id"],
            "username": row["username"],
            "email": row["email"],
            "role": row["role"],
            "is_verified": bool(row["is_verified"]),
            "schema_version": int(row["schema_version"] or 0),
            "data": data if isinstance(data, dict) else {},
        }

    def _row_to_image(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "id": int(row["id"]),
            "url": row["url"],
            "theme": row["theme"],
            "rarity": row["rarity"] or "common",
            "is_shiny": bool(row["is_shiny"]),
        }

    def _row_to_envelope(self, row: aiosqlite.Row) -> Dict[str, Any]:
        pool = json.loads(row["cat_theme_pool_json"]) if row["cat_theme_pool_json"] else []
        return {
            "id": row["id"],
            "name": row["name"],
            "base_cost": int(row["base_cost"]),
            "cost_increase_per_level": int(row["cost_increase_per_level"]),
            "image_count": int(row["image_count"]),
            "color": row["color"],
            "description": row["description"],
            "xp": int(row["xp"] or 0),
            "is_featured": bool(row["is_featured"]),
            "cat_theme_pool": pool,
        }

    def _row_to_friendship(self, row: aiosqlite.Row) -> Dict[str, Any]:
        mission = json.loads(row["active_mission_json"]) if row["active_mission_json"] else None
        return {
            "id": int(row["id"]),
            "user1_id": row["user1_id"],
            "user2_id": row["user2_id"],
            "level": int(row["level"]),
            "xp": int(row["xp"]),
            "active_mission": mission,
            "created_at": row["created_at"],
        }

    def _row_to_trade(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "id": int(row["id"]),
            "from_user_id": row["from_user_id"],
            "to_user_id": row["to_user_id"],
            "offered_image_ids": json.loads(row["offered_json"]),
            "requested_image_ids": json.loads(row["requested_json"]),
            "status": row["status"],
            "reason": row["reason"],
            "created_at": row["created_at"],
        }

    def _row_to_public_phrase(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "id": int(row["id"]),
            "user_id": row["user_id"],
            "phrase_id": row["phrase_id"],
            "text": row["text"],
            "image_url": row["image_url"],
            "image_theme": row["image_theme"],
            "username": row["username"],
            "is_user_verified": bool(row["is_user_verified"]),
            "like_count": int(row["like_count"] or 0),
            "created_at": row["created_at"],
        }

    async def _ensure_column(self, table: str, column: str, column_type: str) -> None:
        assert self.conn is not None
        try:
            await self.conn.execute(
                f"ALTER TABLE {table} ADD COLUMN {column} {column_type}"
            )
        except aiosqlite.OperationalError:
            return
