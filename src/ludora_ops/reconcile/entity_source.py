"""
ludora_ops.reconcile.entity_source - 关系库只读访问

引用收集器只需要两种查询:
    iter_records(table, id_column)          按主键顺序流式遍历整表
    get_record(table, id_column, entity_id) 按主键取单行（多态关系解析用）

PostgresEntitySource 使用只读事务 + 服务端游标分批拉取，
并设置 statement_timeout，避免生产运行期间长时间占用数据库。
收集阶段为单连接串行访问，不做并发查询。
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from .config import PostgresConfig
from .errors import ConfigError, EntitySourceError

logger = logging.getLogger(__name__)


class EntitySource(ABC):
    """关系库只读查询接口"""

    @abstractmethod
    def iter_records(self, table: str, id_column: str = "id") -> Iterator[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_record(
        self, table: str, entity_id: Any, id_column: str = "id"
    ) -> Optional[Dict[str, Any]]:
        ...

    def close(self) -> None:
        return None


def _table_identifier(table: str) -> sql.Composable:
    """支持 schema.table 形式"""
    parts = [p for p in table.split(".") if p]
    if not parts or len(parts) > 2:
        raise EntitySourceError(f"无效的表名: {table}", {"table": table})
    return sql.Identifier(*parts)


class PostgresEntitySource(EntitySource):
    """基于 psycopg 的只读实体查询"""

    def __init__(self, config: PostgresConfig):
        if not config.dsn:
            raise ConfigError(
                "配置项 [postgres].dsn 不能为空（或设置 POSTGRES_DSN）",
                {"section": "postgres", "key": "dsn"},
            )
        self._config = config
        self._conn: Optional[psycopg.Connection] = None

    def _connect(self) -> psycopg.Connection:
        if self._conn is not None and not self._conn.closed:
            return self._conn
        try:
            conn = psycopg.connect(
                self._config.dsn,
                connect_timeout=int(self._config.connect_timeout),
                row_factory=dict_row,
            )
            conn.read_only = True
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("SET statement_timeout = {}").format(
                        sql.Literal(self._config.statement_timeout_ms)
                    )
                )
            conn.commit()
        except psycopg.Error as e:
            raise EntitySourceError(
                f"数据库连接失败: {e}",
                {"error": str(e)},
            ) from e
        self._conn = conn
        return conn

    def iter_records(self, table: str, id_column: str = "id") -> Iterator[Dict[str, Any]]:
        conn = self._connect()
        query = sql.SQL("SELECT * FROM {} ORDER BY {}").format(
            _table_identifier(table), sql.Identifier(id_column)
        )
        cursor_name = f"reconcile_{table.replace('.', '_')}"
        try:
            with conn.transaction():
                with conn.cursor(name=cursor_name) as cur:
                    cur.itersize = self._config.fetch_size
                    cur.execute(query)
                    for row in cur:
                        yield dict(row)
        except psycopg.Error as e:
            raise EntitySourceError(
                f"查询失败: {table}: {e}",
                {"table": table, "error": str(e)},
            ) from e

    def get_record(
        self, table: str, entity_id: Any, id_column: str = "id"
    ) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        query = sql.SQL("SELECT * FROM {} WHERE {} = %s").format(
            _table_identifier(table), sql.Identifier(id_column)
        )
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(query, (entity_id,))
                    row = cur.fetchone()
        except psycopg.Error as e:
            raise EntitySourceError(
                f"查询失败: {table}.{id_column}={entity_id}: {e}",
                {"table": table, "entity_id": str(entity_id), "error": str(e)},
            ) from e
        return dict(row) if row is not None else None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
