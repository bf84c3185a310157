import sqlite3
import time
from pathlib import Path
from typing import List, Optional

import structlog

from kraven.chain import normalize_address
from kraven.models import AlertHistoryEntry, ResolvedDeployment, WalletMapping, WatchlistEntry

logger = structlog.get_logger()


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS watched_accounts (
                x_handle TEXT PRIMARY KEY,
                added_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS watched_wallets (
                x_handle TEXT NOT NULL,
                wallet_address TEXT NOT NULL,
                source TEXT,
                discovered_at INTEGER NOT NULL,
                PRIMARY KEY(x_handle, wallet_address)
            );

            CREATE INDEX IF NOT EXISTS idx_watched_wallets_wallet
                ON watched_wallets(wallet_address);

            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token_name TEXT NOT NULL,
                token_symbol TEXT NOT NULL,
                contract_address TEXT NOT NULL,
                deployer_x_handle TEXT NOT NULL,
                platform TEXT NOT NULL,
                view_url TEXT NOT NULL,
                tx_hash TEXT NOT NULL,
                alerted_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_alert_history_handle
                ON alert_history(deployer_x_handle);

            CREATE INDEX IF NOT EXISTS idx_alert_history_alerted_at
                ON alert_history(alerted_at DESC);
            """
        )
        self.conn.commit()

    def is_handle_watched(self, handle: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM watched_accounts WHERE x_handle = ?",
            (handle.lower(),),
        ).fetchone()
        return row is not None

    def add_watched_account(self, handle: str) -> bool:
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO watched_accounts(x_handle, added_at)
            VALUES (?, ?)
            """,
            (handle.lower(), int(time.time())),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def remove_watched_account(self, handle: str) -> bool:
        handle = handle.lower()
        cur = self.conn.execute(
            """
            DELETE FROM watched_accounts
            WHERE x_handle = ?
            """,
            (handle,),
        )
        self.conn.execute("DELETE FROM watched_wallets WHERE x_handle = ?", (handle,))
        self.conn.commit()
        return cur.rowcount > 0

    def get_watched_accounts(self) -> List[WatchlistEntry]:
        rows = self.conn.execute(
            """
            SELECT x_handle, added_at
            FROM watched_accounts
            ORDER BY added_at ASC, x_handle ASC
            """
        ).fetchall()
        return [WatchlistEntry(handle=r["x_handle"], added_at=int(r["added_at"])) for r in rows]

    def get_watched_count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS n FROM watched_accounts").fetchone()
        return int(row["n"]) if row else 0

    def save_wallet_mapping(self, handle: str, wallet_address: str, source: str) -> bool:
        handle = handle.lower()
        try:
            address = normalize_address(wallet_address)
            self.conn.execute(
                """
                INSERT INTO watched_wallets(x_handle, wallet_address, source, discovered_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(x_handle, wallet_address) DO UPDATE SET
                    source = excluded.source
                """,
                (handle, address, source, int(time.time())),
            )
            self.conn.commit()
        except (ValueError, sqlite3.Error) as e:
            logger.error("wallet mapping not saved", handle=handle, wallet=wallet_address, error=str(e))
            return False
        return True

    def get_handle_by_wallet(self, wallet_address: str) -> Optional[str]:
        row = self.conn.execute(
            """
            SELECT x_handle
            FROM watched_wallets
            WHERE wallet_address = ?
            ORDER BY discovered_at DESC
            LIMIT 1
            """,
            (wallet_address.lower(),),
        ).fetchone()
        return row["x_handle"] if row else None

    def get_wallets_for_handle(self, handle: str) -> List[WalletMapping]:
        rows = self.conn.execute(
            """
            SELECT x_handle, wallet_address, source, discovered_at
            FROM watched_wallets
            WHERE x_handle = ?
            ORDER BY discovered_at ASC, wallet_address ASC
            """,
            (handle.lower(),),
        ).fetchall()
        return [
            WalletMapping(
                handle=r["x_handle"],
                wallet_address=r["wallet_address"],
                source=r["source"] or "",
                discovered_at=int(r["discovered_at"]),
            )
            for r in rows
        ]

    def save_alert_history(self, resolved: ResolvedDeployment) -> None:
        self.conn.execute(
            """
            INSERT INTO alert_history(
                token_name, token_symbol, contract_address, deployer_x_handle,
                platform, view_url, tx_hash, alerted_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                resolved.token.name,
                resolved.token.symbol,
                resolved.token.contract_address,
                resolved.handle,
                resolved.platform_label,
                resolved.view_url,
                resolved.transaction_hash or "",
                int(time.time()),
            ),
        )
        self.conn.commit()

    def get_recent_alerts(self, limit: int = 5) -> List[AlertHistoryEntry]:
        rows = self.conn.execute(
            """
            SELECT *
            FROM alert_history
            ORDER BY alerted_at DESC, id DESC
            LIMIT ?
            """,
            (max(1, int(limit)),),
        ).fetchall()
        return [
            AlertHistoryEntry(
                token_name=r["token_name"],
                token_symbol=r["token_symbol"],
                contract_address=r["contract_address"],
                handle=r["deployer_x_handle"],
                platform=r["platform"],
                view_url=r["view_url"],
                tx_hash=r["tx_hash"],
                alerted_at=int(r["alerted_at"]),
            )
            for r in rows
        ]
