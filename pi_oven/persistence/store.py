"""Node inventory persistence.

One row per Pi in the ``inventory`` table. Disks and bakeforms are re-derived
from the filesystem at startup, so this is the only durable state.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from sqlalchemy import Column, Integer, String, create_engine, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from pi_oven.domain import Node, NodeStatus
from pi_oven.logging import LoggerFactory
from pi_oven.storage.exceptions import PersistenceError


log = LoggerFactory.for_nodes()

Base = declarative_base()


class NodeRecord(Base):
    __tablename__ = "inventory"

    id = Column(String, primary_key=True, nullable=False)
    status = Column(Integer, nullable=False, default=int(NodeStatus.AVAILABLE))
    bakeform = Column(String, nullable=False, default="")
    disk_ids = Column("diskIds", String, key="disk_ids", nullable=False, default="")

    def to_node(self) -> Node:
        return Node(
            id=self.id,
            status=NodeStatus(self.status),
            template=self.bakeform or None,
            disk_ids=[disk_id for disk_id in (self.disk_ids or "").split(",") if disk_id],
        )


def _row_values(node: Node) -> dict:
    return {
        "id": node.id,
        "status": int(node.status),
        "bakeform": node.template or "",
        "disk_ids": ",".join(node.disk_ids),
    }


class NodeStore:
    """SQLAlchemy-backed store for Node records (SQLite by default)."""

    def __init__(self, database_url: str):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        try:
            self._engine = create_engine(database_url, connect_args=connect_args)
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not open inventory {database_url}: {exc}") from exc
        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=self._engine
        )

    @classmethod
    def from_path(cls, path: Path) -> NodeStore:
        return cls(f"sqlite:///{Path(path)}")

    def close(self) -> None:
        self._engine.dispose()

    def get(self, node_id: str) -> Node | None:
        try:
            with self._session_factory() as session:
                record = session.get(NodeRecord, node_id)
                return record.to_node() if record is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read pi {node_id}: {exc}") from exc

    def list(self, statuses: Iterable[NodeStatus] | None = None) -> list[Node]:
        query = select(NodeRecord).order_by(NodeRecord.id)
        if statuses is not None:
            query = query.where(NodeRecord.status.in_([int(status) for status in statuses]))
        try:
            with self._session_factory() as session:
                return [record.to_node() for record in session.scalars(query)]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not list inventory: {exc}") from exc

    def upsert(self, node: Node) -> None:
        """Insert the node row, or update it when the id already exists, in one statement."""
        values = _row_values(node)
        statement = sqlite_insert(NodeRecord.__table__).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[NodeRecord.__table__.c.id],
            set_={name: statement.excluded[name] for name in ("status", "bakeform", "disk_ids")},
        )
        try:
            with self._session_factory() as session:
                session.execute(statement)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not save pi {node.id}: {exc}") from exc
        log.trace(f"Saved pi {node.id} ({node.status.label})")
