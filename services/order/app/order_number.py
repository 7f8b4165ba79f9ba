"""
Order Service — 注文番号の採番

注文番号は "ORD-YYYYMM-NNNN" 形式で、月ごとに 1 から連番になる。

注文件数を数えて +1 する方式は同時チェックアウトや欠番で重複するため、
order_sequences テーブルの月別カウンタを UPDATE で原子的に進める。
カウンタ行がまだ無い月は、その月の既存注文番号の最大連番で初期化する。
"""

from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

ORDER_NUMBER_PREFIX = "ORD"


def format_order_number(year: int, month: int, sequence: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{year}{month:02d}-{sequence:04d}"


def period_prefix(now: datetime) -> str:
    """その月の注文番号に共通する先頭部分 ("ORD-YYYYMM-")"""
    return f"{ORDER_NUMBER_PREFIX}-{now.year}{now.month:02d}-"


async def highest_sequence(session: AsyncSession, now: datetime) -> int:
    """その月に発行済みの注文番号のうち最大の連番 (無ければ 0)"""
    prefix = period_prefix(now)
    highest = await session.scalar(
        text("""
            SELECT MAX(CAST(SUBSTR(order_number, :start) AS INTEGER))
            FROM orders
            WHERE order_number LIKE :pattern
        """),
        {"start": len(prefix) + 1, "pattern": f"{prefix}%"},
    )
    return highest or 0


async def next_order_number(session: AsyncSession, now: datetime) -> str:
    """
    月別カウンタを 1 進めて注文番号を返す。

    呼び出し側のトランザクション内で実行すること。
    注文作成がロールバックされればカウンタも元に戻る。
    """
    period = f"{now.year}{now.month:02d}"

    result = await session.execute(
        text("""
            UPDATE order_sequences
            SET last_value = last_value + 1
            WHERE period = :period
        """),
        {"period": period},
    )

    if result.rowcount:
        sequence = await session.scalar(
            text("SELECT last_value FROM order_sequences WHERE period = :period"),
            {"period": period},
        )
    else:
        # 削除された注文があっても既存の番号と重ならないよう、件数ではなく最大連番から始める
        sequence = await highest_sequence(session, now) + 1
        # 同時に初期化された場合は主キー違反 → 呼び出し側でリトライされる
        await session.execute(
            text("""
                INSERT INTO order_sequences (period, last_value)
                VALUES (:period, :last_value)
            """),
            {"period": period, "last_value": sequence},
        )

    return format_order_number(now.year, now.month, sequence)
