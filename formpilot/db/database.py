from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """SQLAlchemy Base."""


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so every column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """
    显式构造、显式注入的数据库句柄（engine + session 工厂）。

    每个进程（worker / reaper / api）各自创建一个实例并传给需要它的组件，
    测试可以为每个用例创建独立的临时库。
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        connect_args: dict = {}
        if url.startswith("sqlite"):
            # 多线程（心跳线程 + 主循环）共享同一个 engine，写锁等待 30 秒
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine: Engine = create_engine(url, echo=echo, connect_args=connect_args)
        # 禁用 expire_on_commit，避免离开 Session 后对象属性失效导致 DetachedInstanceError
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine, expire_on_commit=False
        )

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    def create_all(self) -> None:
        """初始化数据库表结构。"""
        from ..models.job import Job  # noqa: F401
        from ..models.job_log import JobLog  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        self._patch_jobs_table_schema()

    def _patch_jobs_table_schema(self) -> None:
        """
        在无迁移框架下，幂等补齐 jobs / job_logs 表中后加的字段。
        """
        required_columns: dict[str, dict[str, str]] = {
            "jobs": {
                "scheduled_at": "DATETIME",
                "tags": "JSON",
                "result_summary": "TEXT",
            },
            "job_logs": {
                "event_type": "VARCHAR(64)",
                "actor": "VARCHAR(128)",
                "details": "JSON",
            },
        }
        try:
            inspector = inspect(self.engine)
            with self.engine.begin() as conn:
                for table, columns in required_columns.items():
                    existing = {c["name"] for c in inspector.get_columns(table)}
                    for col, ddl in columns.items():
                        if col in existing:
                            continue
                        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col} {ddl}"))
        except Exception as e:
            print(f"[db] [WARN] schema patch skipped: {e}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """提供一个上下文管理的 Session：正常退出自动 commit，异常回滚。"""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def database_from_settings(settings=None) -> Database:
    from ..config import load_settings

    settings = settings or load_settings()
    return Database(settings.database_url)
