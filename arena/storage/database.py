"""Database storage for arena runs."""
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, DateTime, Integer, Numeric, String, Text, select
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from arena.core.config import database_config
from arena.core.models import (
    EquitySnapshot, LogLevel, ModelState, PositionSide, RecordAction,
    RunInfo, RunLogEntry, RunStatus, TradeRecord, utc_now
)

Base = declarative_base()


class RunModel(Base):
    """SQLAlchemy model for simulation runs."""
    __tablename__ = 'arena_runs'

    id = Column(String, primary_key=True)
    competition_id = Column(String, nullable=True, index=True)
    market = Column(String, nullable=True)
    timeframe = Column(String, nullable=True)
    initial_balance = Column(Numeric(36, 18), nullable=True)
    status = Column(String, nullable=False)
    current_candle_index = Column(Integer, default=0)
    total_candles = Column(Integer, default=0)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class ModelRunStateModel(Base):
    """SQLAlchemy model for per-model ledgers, one row per (run, model)."""
    __tablename__ = 'arena_model_run_state'

    run_id = Column(String, primary_key=True)
    model_id = Column(String, primary_key=True)
    balance = Column(Numeric(36, 18), nullable=False)
    equity = Column(Numeric(36, 18), nullable=False)
    position_side = Column(String, nullable=False, default=PositionSide.NONE.value)
    position_size = Column(Numeric(36, 18), default=0)
    position_entry_price = Column(Numeric(36, 18), nullable=True)
    position_leverage = Column(Integer, default=1)
    unrealized_pnl = Column(Numeric(36, 18), default=0)
    realized_pnl = Column(Numeric(36, 18), default=0)
    total_trades = Column(Integer, default=0)
    winning_trades = Column(Integer, default=0)
    peak_equity = Column(Numeric(36, 18), nullable=False)
    max_drawdown = Column(Numeric(36, 18), default=0)
    updated_at = Column(DateTime(timezone=True), default=utc_now)


class TradeRecordModel(Base):
    """SQLAlchemy model for the trade audit log."""
    __tablename__ = 'arena_trades'

    id = Column(String, primary_key=True)
    run_id = Column(String, nullable=False, index=True)
    model_id = Column(String, nullable=False, index=True)
    candle_index = Column(Integer, nullable=False)
    action = Column(String, nullable=False)
    leverage = Column(Integer, default=1)
    size_pct = Column(Numeric(36, 18), default=0)
    price = Column(Numeric(36, 18), nullable=False)
    fee = Column(Numeric(36, 18), default=0)
    pnl = Column(Numeric(36, 18), nullable=True)
    reason = Column(Text, default="")
    executed = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class EquitySnapshotModel(Base):
    """SQLAlchemy model for equity curves, one row per (run, model, candle)."""
    __tablename__ = 'arena_equity_snapshots'

    run_id = Column(String, primary_key=True)
    model_id = Column(String, primary_key=True)
    candle_index = Column(Integer, primary_key=True)
    timestamp = Column(BigInteger, default=0)
    equity = Column(Numeric(36, 18), nullable=False)
    balance = Column(Numeric(36, 18), nullable=False)
    unrealized_pnl = Column(Numeric(36, 18), default=0)


class RunLogModel(Base):
    """SQLAlchemy model for run log lines."""
    __tablename__ = 'arena_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, nullable=False, index=True)
    model_id = Column(String, nullable=True)
    level = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    metadata_json = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they were stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _async_url(url: str) -> str:
    # Convert SQLite URL to async version if needed
    if url.startswith('sqlite:///') and not url.startswith('sqlite+aiosqlite:///'):
        url = url.replace('sqlite:///', 'sqlite+aiosqlite:///')
    return url


RUN_UPDATABLE_FIELDS = (
    "status", "current_candle_index", "total_candles",
    "started_at", "completed_at", "error",
)


class Database:
    """Async database interface.

    Every write is keyed: re-saving a trade id, an equity snapshot for the same
    (run, model, candle) or a model state for the same (run, model) updates in
    place instead of duplicating.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = _async_url(database_url or database_config.database_url)
        self.engine: AsyncEngine = create_async_engine(self.database_url, echo=False)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        database = self.engine.url.database
        if self.engine.url.get_backend_name() == 'sqlite' and database and database != ':memory:':
            directory = os.path.dirname(database)
            if directory:
                os.makedirs(directory, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Run operations
    async def create_run(self, run: RunInfo) -> RunInfo:
        """Insert a run row."""
        async with self.session_maker() as session:
            session.add(RunModel(
                id=run.id,
                competition_id=run.competition_id,
                market=run.market,
                timeframe=run.timeframe,
                initial_balance=run.initial_balance,
                status=run.status.value,
                current_candle_index=run.current_candle_index,
                total_candles=run.total_candles,
                started_at=run.started_at,
                completed_at=run.completed_at,
                error=run.error,
                created_at=run.created_at,
            ))
            await session.commit()
        return run

    async def get_run(self, run_id: str) -> Optional[RunInfo]:
        """Get a run by ID."""
        async with self.session_maker() as session:
            db_run = await session.get(RunModel, run_id)

            if db_run is None:
                return None

            return self._run_from_model(db_run)

    async def update_run(self, run_id: str, **fields: Any) -> Optional[RunInfo]:
        """
        Update selected columns of a run.

        Args:
            run_id: Run ID
            **fields: Any of status, current_candle_index, total_candles,
                started_at, completed_at, error

        Returns:
            Updated RunInfo, or None if the run does not exist
        """
        unknown = set(fields) - set(RUN_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")

        async with self.session_maker() as session:
            db_run = await session.get(RunModel, run_id)
            if db_run is None:
                return None

            for name, value in fields.items():
                if isinstance(value, RunStatus):
                    value = value.value
                setattr(db_run, name, value)

            await session.commit()
            return self._run_from_model(db_run)

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        competition_id: Optional[str] = None,
        limit: int = 50
    ) -> List[RunInfo]:
        """Get runs, newest first, with optional filters."""
        async with self.session_maker() as session:
            query = select(RunModel).order_by(RunModel.created_at.desc()).limit(limit)

            if status:
                query = query.where(RunModel.status == RunStatus(status).value)
            if competition_id:
                query = query.where(RunModel.competition_id == competition_id)

            result = await session.execute(query)
            return [self._run_from_model(r) for r in result.scalars().all()]

    # Trade operations
    async def save_trade(self, record: TradeRecord):
        """Append a trade record (no-op if its id was already stored)."""
        await self.save_trades([record])

    async def save_trades(self, records: Iterable[TradeRecord]):
        """Append several trade records in one transaction."""
        async with self.session_maker() as session:
            for record in records:
                if await session.get(TradeRecordModel, record.id) is not None:
                    continue
                session.add(TradeRecordModel(
                    id=record.id,
                    run_id=record.run_id,
                    model_id=record.model_id,
                    candle_index=record.candle_index,
                    action=record.action.value,
                    leverage=record.leverage,
                    size_pct=record.size_pct,
                    price=record.price,
                    fee=record.fee,
                    pnl=record.pnl,
                    reason=record.reason,
                    executed=record.executed,
                    created_at=record.created_at,
                ))
            await session.commit()

    async def get_trades(
        self,
        run_id: str,
        model_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[TradeRecord]:
        """Trades of a run in candle order."""
        async with self.session_maker() as session:
            query = (
                select(TradeRecordModel)
                .where(TradeRecordModel.run_id == run_id)
                .order_by(TradeRecordModel.candle_index, TradeRecordModel.created_at)
            )

            if model_id:
                query = query.where(TradeRecordModel.model_id == model_id)
            if limit:
                query = query.limit(limit)

            result = await session.execute(query)
            return [self._trade_from_model(t) for t in result.scalars().all()]

    # Equity operations
    async def save_equity_snapshot(self, snapshot: EquitySnapshot):
        """Save or update the equity reading for (run, model, candle)."""
        await self.save_equity_snapshots([snapshot])

    async def save_equity_snapshots(self, snapshots: Iterable[EquitySnapshot]):
        async with self.session_maker() as session:
            for snapshot in snapshots:
                key = (snapshot.run_id, snapshot.model_id, snapshot.candle_index)
                db_snapshot = await session.get(EquitySnapshotModel, key)

                if db_snapshot is None:
                    session.add(EquitySnapshotModel(
                        run_id=snapshot.run_id,
                        model_id=snapshot.model_id,
                        candle_index=snapshot.candle_index,
                        timestamp=snapshot.timestamp,
                        equity=snapshot.equity,
                        balance=snapshot.balance,
                        unrealized_pnl=snapshot.unrealized_pnl,
                    ))
                else:
                    db_snapshot.timestamp = snapshot.timestamp
                    db_snapshot.equity = snapshot.equity
                    db_snapshot.balance = snapshot.balance
                    db_snapshot.unrealized_pnl = snapshot.unrealized_pnl

            await session.commit()

    async def get_equity_history(self, run_id: str, model_id: str) -> List[EquitySnapshot]:
        """Equity curve of one model, oldest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(EquitySnapshotModel)
                .where(
                    EquitySnapshotModel.run_id == run_id,
                    EquitySnapshotModel.model_id == model_id,
                )
                .order_by(EquitySnapshotModel.candle_index)
            )
            return [
                EquitySnapshot(
                    run_id=s.run_id,
                    model_id=s.model_id,
                    candle_index=s.candle_index,
                    timestamp=s.timestamp or 0,
                    equity=s.equity,
                    balance=s.balance,
                    unrealized_pnl=s.unrealized_pnl,
                )
                for s in result.scalars().all()
            ]

    # Model state operations
    async def upsert_model_state(self, run_id: str, state: ModelState):
        """Save or update the ledger of one model."""
        await self.upsert_model_states(run_id, [state])

    async def upsert_model_states(self, run_id: str, states: Iterable[ModelState]):
        async with self.session_maker() as session:
            for state in states:
                db_state = await session.get(ModelRunStateModel, (run_id, state.model_id))

                if db_state is None:
                    db_state = ModelRunStateModel(run_id=run_id, model_id=state.model_id)
                    session.add(db_state)

                db_state.balance = state.balance
                db_state.equity = state.equity
                db_state.position_side = state.position_side.value
                db_state.position_size = state.position_size
                db_state.position_entry_price = state.position_entry_price
                db_state.position_leverage = state.position_leverage
                db_state.unrealized_pnl = state.unrealized_pnl
                db_state.realized_pnl = state.realized_pnl
                db_state.total_trades = state.total_trades
                db_state.winning_trades = state.winning_trades
                db_state.peak_equity = state.peak_equity
                db_state.max_drawdown = state.max_drawdown
                db_state.updated_at = utc_now()

            await session.commit()

    async def get_model_states(self, run_id: str) -> List[ModelState]:
        """Ledgers of all models in a run."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ModelRunStateModel)
                .where(ModelRunStateModel.run_id == run_id)
                .order_by(ModelRunStateModel.model_id)
            )
            return [self._state_from_model(s) for s in result.scalars().all()]

    # Log operations
    async def add_log(self, entry: RunLogEntry):
        """Append a run log line."""
        async with self.session_maker() as session:
            session.add(RunLogModel(
                run_id=entry.run_id,
                model_id=entry.model_id,
                level=entry.level.value,
                message=entry.message,
                metadata_json=entry.metadata,
                created_at=entry.created_at,
            ))
            await session.commit()

    async def get_logs(self, run_id: str, limit: int = 10) -> List[RunLogEntry]:
        """Most recent log lines of a run, newest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(RunLogModel)
                .where(RunLogModel.run_id == run_id)
                .order_by(RunLogModel.created_at.desc(), RunLogModel.id.desc())
                .limit(limit)
            )
            return [
                RunLogEntry(
                    run_id=log.run_id,
                    model_id=log.model_id,
                    level=LogLevel(log.level),
                    message=log.message,
                    metadata=log.metadata_json or {},
                    created_at=_aware(log.created_at),
                )
                for log in result.scalars().all()
            ]

    # Helpers
    def _run_from_model(self, model: RunModel) -> RunInfo:
        """Convert DB model to RunInfo."""
        return RunInfo(
            id=model.id,
            competition_id=model.competition_id,
            market=model.market,
            timeframe=model.timeframe,
            initial_balance=model.initial_balance,
            status=RunStatus(model.status),
            current_candle_index=model.current_candle_index or 0,
            total_candles=model.total_candles or 0,
            started_at=_aware(model.started_at),
            completed_at=_aware(model.completed_at),
            error=model.error,
            created_at=_aware(model.created_at),
        )

    def _trade_from_model(self, model: TradeRecordModel) -> TradeRecord:
        """Convert DB model to TradeRecord."""
        return TradeRecord(
            id=model.id,
            run_id=model.run_id,
            model_id=model.model_id,
            candle_index=model.candle_index,
            action=RecordAction(model.action),
            leverage=model.leverage,
            size_pct=model.size_pct,
            price=model.price,
            fee=model.fee,
            pnl=model.pnl,
            reason=model.reason or "",
            executed=bool(model.executed),
            created_at=_aware(model.created_at),
        )

    def _state_from_model(self, model: ModelRunStateModel) -> ModelState:
        """Convert DB model to ModelState."""
        return ModelState(
            model_id=model.model_id,
            balance=model.balance,
            equity=model.equity,
            position_side=PositionSide(model.position_side),
            position_size=model.position_size,
            position_entry_price=model.position_entry_price,
            position_leverage=model.position_leverage,
            unrealized_pnl=model.unrealized_pnl,
            realized_pnl=model.realized_pnl,
            total_trades=model.total_trades,
            winning_trades=model.winning_trades,
            peak_equity=model.peak_equity,
            max_drawdown=model.max_drawdown,
        )

    def __repr__(self) -> str:
        return f"Database(url={self.database_url!r})"


def run_log(
    run_id: str,
    message: str,
    level: LogLevel = LogLevel.INFO,
    model_id: Optional[str] = None,
    **metadata: Any
) -> RunLogEntry:
    """Shorthand for building a RunLogEntry."""
    metadata_dict: Dict[str, Any] = {k: v for k, v in metadata.items() if v is not None}
    return RunLogEntry(
        run_id=run_id, model_id=model_id, level=level, message=message, metadata=metadata_dict
    )
