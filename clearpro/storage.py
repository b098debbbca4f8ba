import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlmodel import select

from .db import init_db, make_engine, make_session_factory
from .errors import ConflictError, NotFoundError, StorageUnavailableError
from .models import Case, CaseStatus
from .utils import parse_case_ref

logger = logging.getLogger(__name__)

class CaseStore(ABC):
    backend = "abstract"

    async def connect(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def add(self, case: Case) -> Case: ...

    @abstractmethod
    async def get(self, ref: str) -> Case:
        """Look a case up by storage id or caseId; raise NotFoundError if absent."""

    @abstractmethod
    async def list(self, status: Optional[CaseStatus] = None) -> List[Case]:
        """Cases newest first, optionally restricted to one status."""

    @abstractmethod
    async def save(self, case: Case) -> Case: ...

    @abstractmethod
    async def delete(self, case: Case) -> None: ...

class SQLCaseStore(CaseStore):
    backend = "sql"

    def __init__(self, database_url: str | None = None):
        self.engine = make_engine(database_url)
        self.async_session = make_session_factory(self.engine)
        self._schema_ready = False

    async def connect(self):
        try:
            await self._ensure_schema()
        except StorageUnavailableError:
            # requests answer 503 until the database is back
            logger.error("Database unavailable at startup; schema creation will be retried")

    async def close(self):
        await self.engine.dispose()

    async def _ensure_schema(self):
        if self._schema_ready:
            return
        try:
            await init_db(self.engine)
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.error("Schema creation failed: %s", exc)
            raise StorageUnavailableError("Database is unreachable") from exc
        self._schema_ready = True

    @asynccontextmanager
    async def _session(self):
        await self._ensure_schema()
        try:
            async with self.async_session() as sess:
                yield sess
        except IntegrityError as exc:
            raise ConflictError("A case with this identifier already exists") from exc
        except (OperationalError, InterfaceError) as exc:
            logger.error("Database operation failed: %s", exc)
            raise StorageUnavailableError("Database is unreachable") from exc

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            await self._ensure_schema()
        except (SQLAlchemyError, OSError, StorageUnavailableError) as exc:
            logger.warning("Database ping failed: %s", exc)
            return False
        return True

    async def add(self, case: Case) -> Case:
        async with self._session() as sess:
            sess.add(case)
            await sess.commit()
            await sess.refresh(case)
        return case

    async def get(self, ref: str) -> Case:
        field, value = parse_case_ref(ref)
        column = Case.id if field == "id" else Case.case_id
        async with self._session() as sess:
            res = await sess.exec(select(Case).where(column == value))
            case = res.first()
        if not case:
            raise NotFoundError(f"Case {ref} not found")
        return case

    async def list(self, status: Optional[CaseStatus] = None) -> List[Case]:
        q = select(Case)
        if status is not None:
            q = q.where(Case.status == status)
        q = q.order_by(Case.created_at.desc(), Case.case_id.desc())
        async with self._session() as sess:
            return list((await sess.exec(q)).all())

    async def save(self, case: Case) -> Case:
        async with self._session() as sess:
            merged = await sess.merge(case)
            await sess.commit()
            await sess.refresh(merged)
        return merged

    async def delete(self, case: Case) -> None:
        async with self._session() as sess:
            existing = await sess.get(Case, case.id)
            if existing is None:
                raise NotFoundError(f"Case {case.case_id} not found")
            await sess.delete(existing)
            await sess.commit()

class MemoryCaseStore(CaseStore):
    """Process-local store. Keeps snapshots so callers never share live objects."""
    backend = "memory"

    def __init__(self):
        self._cases: Dict[str, dict] = {}

    @staticmethod
    def _snapshot(case: Case) -> dict:
        return copy.deepcopy(case.model_dump())

    @staticmethod
    def _restore(data: dict) -> Case:
        return Case(**copy.deepcopy(data))

    def _check_unique(self, case: Case):
        for stored_id, data in self._cases.items():
            if stored_id != case.id and data["case_id"] == case.case_id:
                raise ConflictError(f"Case {case.case_id} already exists")

    async def ping(self) -> bool:
        return True

    async def add(self, case: Case) -> Case:
        if case.id in self._cases:
            raise ConflictError(f"Case {case.id} already exists")
        self._check_unique(case)
        self._cases[case.id] = self._snapshot(case)
        return self._restore(self._cases[case.id])

    async def get(self, ref: str) -> Case:
        field, value = parse_case_ref(ref)
        if field == "id":
            data = self._cases.get(value)
        else:
            data = next((d for d in self._cases.values() if d["case_id"] == value), None)
        if data is None:
            raise NotFoundError(f"Case {ref} not found")
        return self._restore(data)

    async def list(self, status: Optional[CaseStatus] = None) -> List[Case]:
        rows = [d for d in self._cases.values() if status is None or d["status"] == status]
        rows.sort(key=lambda d: (d["created_at"], d["case_id"]), reverse=True)
        return [self._restore(d) for d in rows]

    async def save(self, case: Case) -> Case:
        self._check_unique(case)
        self._cases[case.id] = self._snapshot(case)
        return self._restore(self._cases[case.id])

    async def delete(self, case: Case) -> None:
        if self._cases.pop(case.id, None) is None:
            raise NotFoundError(f"Case {case.case_id} not found")

def build_store(backend: str, database_url: str | None = None) -> CaseStore:
    if backend == "memory":
        return MemoryCaseStore()
    if backend == "sql":
        return SQLCaseStore(database_url)
    raise ValueError(f"Unknown storage backend: {backend}")
