"""Date-partitioned warehouse table for shard results."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, Index, Text, delete, func
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

logger = logging.getLogger(__name__)


class WarehouseLoadError(RuntimeError):
    """A partition load failed; the partition keeps its previous contents."""


class ShardResultRecord(SQLModel, table=True):
    __tablename__ = "shard_results"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_shard_results_partition", "partition_date"),)

    record_id: int | None = Field(default=None, primary_key=True)
    partition_date: str
    job_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    shard_name: str
    repo_name: str = Field(index=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))


@dataclass(frozen=True, slots=True)
class ShardObject:
    """One shard result object to load."""

    name: str
    content: bytes


class Warehouse:
    """Loads shard results with full-partition overwrite semantics."""

    def __init__(self, url: str) -> None:
        self.url = url
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database:
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(url)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[ShardResultRecord.__table__],  # type: ignore[list-item]
        )

    def close(self) -> None:
        self.engine.dispose()

    def load_partition(
        self,
        *,
        partition: date,
        job_time: datetime,
        shards: list[ShardObject],
    ) -> int:
        """Replace the partition with every JSON line of ``shards``; return row count."""

        partition_key = partition.isoformat()
        rows: list[ShardResultRecord] = []
        for shard in shards:
            try:
                text = shard.content.decode("utf-8")
            except UnicodeDecodeError as error:
                raise WarehouseLoadError(f"{shard.name} is not valid UTF-8: {error}") from error
            for line_no, line in enumerate(text.splitlines(), start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as error:
                    raise WarehouseLoadError(
                        f"invalid JSON in {shard.name} line {line_no}: {error}",
                    ) from error
                repo = record.get("repo") if isinstance(record, dict) else None
                rows.append(
                    ShardResultRecord(
                        partition_date=partition_key,
                        job_time=job_time.replace(tzinfo=None),
                        shard_name=shard.name,
                        repo_name=str(repo.get("name", "")) if isinstance(repo, dict) else "",
                        payload=line,
                    ),
                )

        try:
            with Session(self.engine) as session:
                session.exec(
                    delete(ShardResultRecord).where(
                        col(ShardResultRecord.partition_date) == partition_key,
                    ),
                )
                session.add_all(rows)
                session.commit()
        except SQLAlchemyError as error:
            raise WarehouseLoadError(
                f"load of partition {partition_key} failed: {error}",
            ) from error
        logger.info("Loaded %d row(s) into partition %s", len(rows), partition_key)
        return len(rows)

    def count_rows(self, partition: date | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(ShardResultRecord)
            if partition is not None:
                statement = statement.where(
                    col(ShardResultRecord.partition_date) == partition.isoformat(),
                )
            return int(session.exec(statement).one())
