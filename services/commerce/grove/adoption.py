"""
Commerce Service — 里親枠アロケーター

区画 (land plot): 1..total_slots の枠番号を割り当てる。
  1. occupied_slots < total_slots を条件に占有数を 1 進める (compare-and-swap)
  2. Active な里親が使っていない最小の枠番号を選ぶ
  3. 期限 1 年の里親レコードを作成
  4. 占有数を Active 件数から再計算し、満杯なら status を 'Fully Adopted' に

単木 (tree): 里親集合への追加。重複不可、max_adopters に達したら満杯。

最初の文が条件付き UPDATE なので、同じ区画・同じ木への同時割り当ては
ストレージ層の行ロック (SQLite ではデータベースロック) で直列化される。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import AlreadyAdoptedError, ConflictError, NotFoundError, SlotsExhaustedError, ValidationError

logger = logging.getLogger(__name__)

AVAILABLE = "Available"
FULLY_ADOPTED = "Fully Adopted"
MAINTENANCE = "Maintenance"


@dataclass(frozen=True)
class Allocation:
    target: str
    target_id: str
    user_id: str
    slot_number: int | None
    adopted_at: str
    expires_at: str | None

    def as_dict(self) -> dict:
        return {
            "target": self.target,
            "target_id": self.target_id,
            "user_id": self.user_id,
            "slot_number": self.slot_number,
            "adopted_at": self.adopted_at,
            "expires_at": self.expires_at,
        }


def renewal_date(start: datetime) -> datetime:
    """start の 1 年後 (2/29 は 2/28 に寄せる)。"""
    try:
        return start.replace(year=start.year + config.ADOPTION_TERM_YEARS)
    except ValueError:
        return start.replace(year=start.year + config.ADOPTION_TERM_YEARS, day=28)


def lowest_free_slot(taken: list[int]) -> int:
    slot = 1
    for number in sorted(set(taken)):
        if number == slot:
            slot += 1
        elif number > slot:
            break
    return slot


# ── 区画 ────────────────────────────────────────

async def allocate_plot_slot(
    session: AsyncSession,
    plot_id: str,
    user_id: str,
    order_id: str | None = None,
    now: datetime | None = None,
) -> Allocation:
    """区画の空き枠を 1 つ割り当てる。commit はしない。"""
    now = now or datetime.now(timezone.utc)

    result = await session.execute(
        text("""
            UPDATE land_plots
            SET occupied_slots = occupied_slots + 1
            WHERE id = :plot_id
              AND occupied_slots < total_slots
              AND status != :maintenance
        """),
        {"plot_id": plot_id, "maintenance": MAINTENANCE},
    )
    if result.rowcount == 0:
        row = (await session.execute(
            text("SELECT status FROM land_plots WHERE id = :plot_id"),
            {"plot_id": plot_id},
        )).fetchone()
        if row is None:
            raise NotFoundError(f"Land plot {plot_id} not found")
        if row.status == MAINTENANCE:
            raise ConflictError("Land plot is under maintenance")
        raise SlotsExhaustedError("All slots in this land plot are adopted")

    taken = (await session.execute(
        text("""
            SELECT slot_number FROM plot_adoptions
            WHERE plot_id = :plot_id AND status = 'Active'
        """),
        {"plot_id": plot_id},
    )).scalars().all()
    slot_number = lowest_free_slot(list(taken))

    adopted_at = now.isoformat()
    expires_at = renewal_date(now).isoformat()
    await session.execute(
        text("""
            INSERT INTO plot_adoptions
                (id, plot_id, user_id, order_id, slot_number, adopted_at, expires_at, status)
            VALUES
                (:id, :plot_id, :user_id, :order_id, :slot_number, :adopted_at, :expires_at, 'Active')
        """),
        {
            "id": str(uuid4()),
            "plot_id": plot_id,
            "user_id": user_id,
            "order_id": order_id,
            "slot_number": slot_number,
            "adopted_at": adopted_at,
            "expires_at": expires_at,
        },
    )
    await _recount_plot(session, plot_id)

    logger.info("Allocated slot %d of plot %s to %s", slot_number, plot_id, user_id)
    return Allocation("plot", plot_id, user_id, slot_number, adopted_at, expires_at)


async def _recount_plot(session: AsyncSession, plot_id: str) -> None:
    await session.execute(
        text("""
            UPDATE land_plots
            SET occupied_slots = (
                SELECT COUNT(*) FROM plot_adoptions
                WHERE plot_id = :plot_id AND status = 'Active'
            )
            WHERE id = :plot_id
        """),
        {"plot_id": plot_id},
    )
    await session.execute(
        text("""
            UPDATE land_plots
            SET status = :full
            WHERE id = :plot_id AND occupied_slots >= total_slots AND status = :available
        """),
        {"plot_id": plot_id, "full": FULLY_ADOPTED, "available": AVAILABLE},
    )


# ── 単木 ────────────────────────────────────────

async def allocate_tree(
    session: AsyncSession,
    tree_id: str,
    user_id: str,
    order_id: str | None = None,
    now: datetime | None = None,
) -> Allocation:
    """木の里親集合にユーザーを追加する。commit はしない。"""
    now = now or datetime.now(timezone.utc)

    tree = (await session.execute(
        text("SELECT id FROM trees WHERE id = :tree_id"),
        {"tree_id": tree_id},
    )).fetchone()
    if tree is None:
        raise NotFoundError(f"Tree {tree_id} not found")
    if await _is_adopter(session, tree_id, user_id):
        raise AlreadyAdoptedError()

    result = await session.execute(
        text("""
            UPDATE trees
            SET adopter_count = adopter_count + 1
            WHERE id = :tree_id AND adopter_count < max_adopters
        """),
        {"tree_id": tree_id},
    )
    if result.rowcount == 0:
        raise SlotsExhaustedError("This tree has reached its maximum number of adopters")

    adopted_at = now.isoformat()
    result = await session.execute(
        text("""
            INSERT INTO tree_adopters (tree_id, user_id, order_id, adopted_at)
            VALUES (:tree_id, :user_id, :order_id, :adopted_at)
            ON CONFLICT (tree_id, user_id) DO NOTHING
        """),
        {"tree_id": tree_id, "user_id": user_id, "order_id": order_id, "adopted_at": adopted_at},
    )
    if result.rowcount == 0:
        # 同じユーザーの同時リクエストに負けた: 進めた人数を戻す
        await session.execute(
            text("UPDATE trees SET adopter_count = adopter_count - 1 WHERE id = :tree_id"),
            {"tree_id": tree_id},
        )
        raise AlreadyAdoptedError()

    await session.execute(
        text("""
            UPDATE trees
            SET status = :full
            WHERE id = :tree_id AND adopter_count >= max_adopters
        """),
        {"tree_id": tree_id, "full": FULLY_ADOPTED},
    )
    logger.info("User %s adopted tree %s", user_id, tree_id)
    return Allocation("tree", tree_id, user_id, None, adopted_at, None)


async def _is_adopter(session: AsyncSession, tree_id: str, user_id: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM tree_adopters WHERE tree_id = :tree_id AND user_id = :user_id"),
        {"tree_id": tree_id, "user_id": user_id},
    )
    return result.first() is not None


async def allocate(
    session: AsyncSession,
    target: str,
    target_id: str,
    user_id: str,
    order_id: str | None = None,
    now: datetime | None = None,
) -> Allocation:
    if target == "plot":
        return await allocate_plot_slot(session, target_id, user_id, order_id, now)
    if target == "tree":
        return await allocate_tree(session, target_id, user_id, order_id, now)
    raise ValidationError(f"Unknown adoption target: {target}")


# ── 期限切れ・照会 ───────────────────────────────

async def expire_lapsed(session: AsyncSession, now: datetime | None = None) -> int:
    """
    期限を過ぎた Active な区画里親を Expired にし、枠を空ける。
    満杯だった区画は再び Available になる。commit はしない。
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            UPDATE plot_adoptions
            SET status = 'Expired'
            WHERE status = 'Active' AND expires_at <= :now
        """),
        {"now": now.isoformat()},
    )
    expired = result.rowcount
    if expired:
        await session.execute(
            text("""
                UPDATE land_plots
                SET occupied_slots = (
                    SELECT COUNT(*) FROM plot_adoptions
                    WHERE plot_adoptions.plot_id = land_plots.id AND plot_adoptions.status = 'Active'
                )
            """),
        )
        await session.execute(
            text("""
                UPDATE land_plots
                SET status = :available
                WHERE status = :full AND occupied_slots < total_slots
            """),
            {"available": AVAILABLE, "full": FULLY_ADOPTED},
        )
        logger.info("Expired %d lapsed plot adoptions", expired)
    return expired


async def count_user_adoptions(session: AsyncSession, user_id: str) -> int:
    """マイルストーン判定用: Active な区画里親 + 木の里親の数。"""
    plots = (await session.execute(
        text("SELECT COUNT(*) FROM plot_adoptions WHERE user_id = :user_id AND status = 'Active'"),
        {"user_id": user_id},
    )).scalar_one()
    trees = (await session.execute(
        text("SELECT COUNT(*) FROM tree_adopters WHERE user_id = :user_id"),
        {"user_id": user_id},
    )).scalar_one()
    return int(plots) + int(trees)


async def list_user_adoptions(session: AsyncSession, user_id: str) -> list[dict]:
    plots = await session.execute(
        text("""
            SELECT pa.plot_id, lp.name, lp.location, pa.slot_number,
                   pa.adopted_at, pa.expires_at, pa.status, pa.order_id
            FROM plot_adoptions pa
            JOIN land_plots lp ON lp.id = pa.plot_id
            WHERE pa.user_id = :user_id
            ORDER BY pa.adopted_at DESC
        """),
        {"user_id": user_id},
    )
    trees = await session.execute(
        text("""
            SELECT ta.tree_id, t.name, t.location, t.species, ta.adopted_at, ta.order_id
            FROM tree_adopters ta
            JOIN trees t ON t.id = ta.tree_id
            WHERE ta.user_id = :user_id
            ORDER BY ta.adopted_at DESC
        """),
        {"user_id": user_id},
    )
    adoptions = [
        {
            "target": "plot",
            "target_id": row.plot_id,
            "name": row.name,
            "location": row.location,
            "slot_number": row.slot_number,
            "adopted_at": row.adopted_at,
            "expires_at": row.expires_at,
            "status": row.status,
            "order_id": row.order_id,
        }
        for row in plots.fetchall()
    ]
    adoptions.extend(
        {
            "target": "tree",
            "target_id": row.tree_id,
            "name": row.name,
            "location": row.location,
            "species": row.species,
            "adopted_at": row.adopted_at,
            "status": "Active",
            "order_id": row.order_id,
        }
        for row in trees.fetchall()
    )
    return adoptions
