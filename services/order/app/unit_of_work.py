"""
Order Service — Unit of Work

注文作成・キャンセルは複数行 (注文・明細・商品在庫・採番カウンタ) を更新する。
これらを 1 つのトランザクションとして扱うためのラッパー。

    async with UnitOfWork(session) as uow:
        await uow.session.execute(...)
        await uow.commit()

commit() を呼ばずにブロックを抜けた場合、または例外が発生した場合は
すべての書き込みがロールバックされる。
"""

from sqlalchemy.ext.asyncio import AsyncSession


class UnitOfWork:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.committed = False

    async def __aenter__(self) -> "UnitOfWork":
        self.committed = False
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None or not self.committed:
            await self.rollback()

    async def commit(self) -> None:
        await self.session.commit()
        self.committed = True

    async def rollback(self) -> None:
        await self.session.rollback()
