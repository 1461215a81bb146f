"""
Commerce Service — 通知アウトボックス

状態遷移はメールを直接送らず、notification_outbox に行を追加するだけ。
別のディスパッチャ (run_dispatcher) が行を取り出して外部のメールサービスに送る。

  遷移 (同じトランザクション) ──▶ notification_outbox ──▶ dispatcher ──▶ Email Service

dedupe_key は一意なので、Webhook の再送などで同じ遷移が繰り返されても
同じ通知が 2 回積まれることはない。送信失敗は注文の状態に影響しない。
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import httpx
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import config

logger = logging.getLogger(__name__)

ADOPTION_CERTIFICATE = "adoption_certificate"
ORDER_CONFIRMATION = "order_confirmation"
MILESTONE = "milestone"
ORDER_STATUS = "order_status"


async def enqueue(
    session: AsyncSession,
    kind: str,
    recipient: str,
    payload: dict,
    dedupe_key: str,
    order_id: str | None = None,
) -> bool:
    """通知を積む。同じ dedupe_key が既にあれば何もせず False。commit はしない。"""
    if not recipient:
        logger.warning("Skipping %s notification without recipient (%s)", kind, dedupe_key)
        return False
    result = await session.execute(
        text("""
            INSERT INTO notification_outbox
                (id, dedupe_key, order_id, kind, recipient, payload, status, attempts, created_at)
            VALUES
                (:id, :dedupe_key, :order_id, :kind, :recipient, :payload, 'pending', 0, :now)
            ON CONFLICT (dedupe_key) DO NOTHING
        """),
        {
            "id": str(uuid4()),
            "dedupe_key": dedupe_key,
            "order_id": order_id,
            "kind": kind,
            "recipient": recipient,
            "payload": json.dumps(payload, default=str),
            "now": datetime.now(timezone.utc).isoformat(),
        },
    )
    return result.rowcount > 0


async def list_for_order(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, kind, recipient, payload, status, attempts, created_at, sent_at
            FROM notification_outbox
            WHERE order_id = :order_id
            ORDER BY created_at ASC
        """),
        {"order_id": order_id},
    )
    return [
        {
            "id": row.id,
            "kind": row.kind,
            "recipient": row.recipient,
            "payload": json.loads(row.payload),
            "status": row.status,
            "attempts": row.attempts,
            "created_at": row.created_at,
            "sent_at": row.sent_at,
        }
        for row in result.fetchall()
    ]


# ── Email Service クライアント ──────────────────────

class EmailClient:
    """外部のトランザクションメールサービスを HTTP で呼び出す。"""

    def __init__(
        self,
        base_url: str = config.EMAIL_SERVICE_URL,
        timeout: float = config.EMAIL_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, template: str, body: dict) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(f"{self.base_url}/emails/{template}", json=body)
            resp.raise_for_status()

    async def send_adoption_certificate(
        self, recipient: str, adopter_name: str, item_info: dict, is_gift: bool
    ) -> None:
        await self._post("adoption-certificate", {
            "to": recipient,
            "adopter_name": adopter_name,
            "item": item_info,
            "is_gift": is_gift,
        })

    async def send_order_confirmation(self, recipient: str, order: dict) -> None:
        await self._post("order-confirmation", {"to": recipient, "order": order})

    async def send_milestone_notification(
        self, recipient: str, user_name: str, milestone: str, adoption_count: int
    ) -> None:
        await self._post("milestone", {
            "to": recipient,
            "user_name": user_name,
            "milestone": milestone,
            "adoption_count": adoption_count,
        })

    async def send_order_status_update(self, recipient: str, order: dict) -> None:
        await self._post("order-status", {"to": recipient, "order": order})

    async def send(self, kind: str, recipient: str, payload: dict) -> None:
        """アウトボックスの 1 行を対応するテンプレートで送る。"""
        if kind == ADOPTION_CERTIFICATE:
            await self.send_adoption_certificate(
                recipient, payload["adopter_name"], payload["item"], payload["is_gift"]
            )
        elif kind == ORDER_CONFIRMATION:
            await self.send_order_confirmation(recipient, payload)
        elif kind == MILESTONE:
            await self.send_milestone_notification(
                recipient, payload["user_name"], payload["milestone"], payload["adoption_count"]
            )
        elif kind == ORDER_STATUS:
            await self.send_order_status_update(recipient, payload)
        else:
            raise ValueError(f"Unknown notification kind: {kind}")


# ── ディスパッチャ ──────────────────────────────────

async def dispatch_pending(
    async_session_factory: sessionmaker,
    mailer: EmailClient,
    limit: int = config.OUTBOX_BATCH_SIZE,
    max_attempts: int = config.OUTBOX_MAX_ATTEMPTS,
) -> int:
    """
    pending の通知を送信する。送信できた件数を返す。

    各行は pending → sending の条件付き UPDATE で確保してから送るので、
    複数のディスパッチャが同じ行を二重送信することはない。
    """
    async with async_session_factory() as session:
        result = await session.execute(
            text("""
                SELECT id FROM notification_outbox
                WHERE status = 'pending'
                ORDER BY created_at ASC
                LIMIT :limit
            """),
            {"limit": limit},
        )
        ids = [row.id for row in result.fetchall()]

    sent = 0
    for outbox_id in ids:
        async with async_session_factory() as session:
            claimed = await session.execute(
                text("""
                    UPDATE notification_outbox
                    SET status = 'sending', attempts = attempts + 1
                    WHERE id = :id AND status = 'pending'
                """),
                {"id": outbox_id},
            )
            await session.commit()
            if claimed.rowcount == 0:
                continue

            row = (await session.execute(
                text("SELECT kind, recipient, payload, attempts FROM notification_outbox WHERE id = :id"),
                {"id": outbox_id},
            )).fetchone()

            try:
                await mailer.send(row.kind, row.recipient, json.loads(row.payload))
            except Exception as exc:
                logger.exception("Failed to send %s notification %s", row.kind, outbox_id)
                await session.execute(
                    text("""
                        UPDATE notification_outbox
                        SET status = :status, last_error = :error
                        WHERE id = :id
                    """),
                    {
                        "id": outbox_id,
                        "status": "failed" if row.attempts >= max_attempts else "pending",
                        "error": str(exc)[:500],
                    },
                )
            else:
                await session.execute(
                    text("""
                        UPDATE notification_outbox
                        SET status = 'sent', sent_at = :now, last_error = NULL
                        WHERE id = :id
                    """),
                    {"id": outbox_id, "now": datetime.now(timezone.utc).isoformat()},
                )
                sent += 1
            await session.commit()
    return sent


async def requeue_stuck(async_session_factory: sessionmaker) -> int:
    """送信中に停止した行 (sending) を pending に戻す。起動時に 1 度だけ呼ぶ。"""
    async with async_session_factory() as session:
        result = await session.execute(
            text("UPDATE notification_outbox SET status = 'pending' WHERE status = 'sending'"),
        )
        await session.commit()
        return result.rowcount


async def run_dispatcher(
    async_session_factory: sessionmaker,
    mailer: EmailClient,
    shutdown_event: asyncio.Event,
    interval: float = config.OUTBOX_POLL_INTERVAL_SECONDS,
) -> None:
    """
    アウトボックスをポーリングして通知を送り続ける。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    requeued = await requeue_stuck(async_session_factory)
    if requeued:
        logger.info("Requeued %d notifications left in sending state", requeued)
    logger.info("Notification dispatcher started")

    while not shutdown_event.is_set():
        try:
            sent = await dispatch_pending(async_session_factory, mailer)
            if sent:
                logger.info("Dispatched %d notifications", sent)
        except Exception:
            logger.exception("Notification dispatch cycle failed")
        await asyncio.sleep(interval)
