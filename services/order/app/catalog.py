"""
Order Service — カタログストア (読み取り専用)

メニューの作成・更新・削除はカタログ管理側の責務。
ここでは価格計算に必要な読み取りだけを提供する。
"""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import DependencyError
from .models import Pizza

logger = logging.getLogger(__name__)


class CatalogStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def get_pizza_by_id(self, pizza_id: str) -> Pizza | None:
        """ルックアップごとに独立したセッションを使う(並列実行のため)。"""
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(Pizza).where(Pizza.id == pizza_id))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DependencyError(
                "Catalog lookup failed", code="CATALOG_UNAVAILABLE"
            ) from e

    async def get_pizzas_by_ids(self, pizza_ids) -> dict[str, Pizza]:
        """
        参照されている商品をまとめて取得する。

        ユニークな ID ごとにルックアップを並列に発行し (fan-out)、
        全て揃ってから結果を返す (fan-in)。見つからない ID は結果に含まれない。
        """
        unique_ids = list(dict.fromkeys(pid for pid in pizza_ids if pid))
        if not unique_ids:
            return {}
        pizzas = await asyncio.gather(*(self.get_pizza_by_id(pid) for pid in unique_ids))
        found = {pid: p for pid, p in zip(unique_ids, pizzas) if p is not None}
        missing = len(unique_ids) - len(found)
        if missing:
            logger.info("Catalog lookup: %d of %d pizzas not found", missing, len(unique_ids))
        return found


def list_sizes(pizza: Pizza) -> list[dict]:
    return [
        {"name": s.name, "multiplier": s.price_multiplier}
        for s in (pizza.sizes or [])
    ]
