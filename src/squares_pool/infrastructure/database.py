import json
import sqlite3
import os
from typing import List, Optional
from squares_pool.config import settings
from squares_pool.domain.models import PurchaseReceipt, PurchaseSession

class DatabaseManager:
    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.DATABASE_PATH
        if os.path.dirname(self.path):
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._init_db()

    def _init_db(self):
        """两张表：在途购买会话(刷新/重启后续跑) 和 成交回执流水"""
        with sqlite3.connect(self.path) as conn:
            # 每个 池子+账户 只有一个在途会话
            conn.execute("""
                CREATE TABLE IF NOT EXISTS purchase_sessions (
                    pool_address TEXT NOT NULL,
                    account TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (pool_address, account)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS purchase_receipts (
                    session_id TEXT PRIMARY KEY,
                    pool_address TEXT,
                    account TEXT,
                    positions TEXT,
                    count INTEGER,
                    total_cost TEXT,
                    tx_hash TEXT,
                    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

    def save_session(self, account: str, session: PurchaseSession):
        with sqlite3.connect(self.path) as conn:
            conn.execute("""
                INSERT INTO purchase_sessions (pool_address, account, session_id, payload)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(pool_address, account) DO UPDATE SET
                session_id=excluded.session_id, payload=excluded.payload, updated_at=CURRENT_TIMESTAMP
            """, (session.pool_address.lower(), account.lower(), session.session_id, session.model_dump_json()))

    def load_session(self, pool_address: str, account: str) -> Optional[PurchaseSession]:
        with sqlite3.connect(self.path) as conn:
            row = conn.execute("SELECT payload FROM purchase_sessions WHERE pool_address = ? AND account = ?",
                               (pool_address.lower(), account.lower())).fetchone()
        return PurchaseSession.model_validate_json(row[0]) if row else None

    def delete_session(self, pool_address: str, account: str):
        with sqlite3.connect(self.path) as conn:
            conn.execute("DELETE FROM purchase_sessions WHERE pool_address = ? AND account = ?",
                         (pool_address.lower(), account.lower()))

    def save_receipt(self, pool_address: str, account: str, receipt: PurchaseReceipt):
        # 金额可能超过 sqlite 的 64 位整数，按字符串存
        with sqlite3.connect(self.path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO purchase_receipts (session_id, pool_address, account, positions, count, total_cost, tx_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (receipt.session_id, pool_address.lower(), account.lower(), json.dumps(receipt.positions),
                  receipt.count, str(receipt.total_cost), receipt.tx_hash))

    def get_receipts(self, pool_address: Optional[str] = None) -> List[PurchaseReceipt]:
        with sqlite3.connect(self.path) as conn:
            conn.row_factory = sqlite3.Row
            if pool_address:
                rows = conn.execute("SELECT * FROM purchase_receipts WHERE pool_address = ? ORDER BY timestamp DESC LIMIT 100",
                                    (pool_address.lower(),)).fetchall()
            else:
                rows = conn.execute("SELECT * FROM purchase_receipts ORDER BY timestamp DESC LIMIT 100").fetchall()
        return [PurchaseReceipt(session_id=r["session_id"], positions=json.loads(r["positions"]), count=r["count"],
                                total_cost=int(r["total_cost"]), tx_hash=r["tx_hash"]) for r in rows]

    def clear_all(self):
        with sqlite3.connect(self.path) as conn:
            conn.execute("DELETE FROM purchase_sessions")
            conn.execute("DELETE FROM purchase_receipts")
