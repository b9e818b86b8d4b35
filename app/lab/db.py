"""
最小化的查询接口

领域服务（CostTracker / BaselineManager）只依赖 Queryable，
生产环境用 SqlAlchemyQueryable 包一层 Session，测试可以直接替换。
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Union

from sqlalchemy import text
from sqlalchemy.sql.elements import TextClause
from sqlalchemy.orm import Session


class Queryable(Protocol):
    def query(self, sql: Union[str, TextClause], params: Optional[Mapping[str, Any]] = None) -> list[dict[str, Any]]:
        ...


class SqlAlchemyQueryable:
    def __init__(self, db: Session):
        self._db = db

    def query(self, sql: Union[str, TextClause], params: Optional[Mapping[str, Any]] = None) -> list[dict[str, Any]]:
        stmt = text(sql) if isinstance(sql, str) else sql
        try:
            result = self._db.execute(stmt, dict(params or {}))
            rows = [dict(row._mapping) for row in result] if result.returns_rows else []
            self._db.commit()
            return rows
        except Exception:
            self._db.rollback()
            raise
