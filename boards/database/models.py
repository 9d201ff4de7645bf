from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Float, BigInteger, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from boards.constants import CategoryMode

Base = declarative_base()

class Category(Base):
    """
    One upstream leaderboard tracked by the engine.

    Configured by administrators; the sync engine only reads it, except for
    deactivating it when the upstream reports the leaderboard as gone.
    """
    __tablename__ = 'categories'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    leaderboard_id = Column(String(64), nullable=False, unique=True)  # Upstream leaderboard identifier
    map_id = Column(String(64), nullable=False, index=True)
    mode = Column(String(10), nullable=False, default=CategoryMode.SINGLE)

    # Proof thresholds: top N ranks requiring each artifact
    demo_threshold = Column(Integer, nullable=False, default=200)
    video_threshold = Column(Integer, nullable=False, default=200)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())

    runs = relationship("Run", back_populates="category")
    cursor = relationship("SyncCursor", back_populates="category", uselist=False)

    __table_args__ = (UniqueConstraint('map_id', 'name'),)

    @property
    def is_coop(self) -> bool:
        return self.mode == CategoryMode.COOP

    def __repr__(self):
        return f"<Category(id={self.id}, name='{self.name}', mode='{self.mode}')>"

class Player(Base):
    __tablename__ = 'players'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    display_name = Column(String(100))
    avatar_url = Column(String(500))
    avatar_refreshed_at = Column(DateTime, nullable=True)

    # Cached sum of each category's best run points
    total_points = Column(Float, default=0.0, nullable=False)

    is_active = Column(Boolean, default=True)   # False once the upstream reports the identity gone
    is_banned = Column(Boolean, default=False)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Optimistic concurrency counter, checked and bumped on every flush
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    runs = relationship("Run", back_populates="player", foreign_keys="Run.player_id")

    def __repr__(self):
        return f"<Player(external_id='{self.external_id}', name='{self.display_name}', points={self.total_points})>"

class CoopPair(Base):
    """
    Two players' independently submitted entries merged into one cooperative run.
    """
    __tablename__ = 'coop_pairs'

    id = Column(Integer, primary_key=True)
    category_id = Column(Integer, ForeignKey('categories.id'), nullable=False, index=True)
    player1_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    player2_id = Column(Integer, ForeignKey('players.id'), nullable=False)

    # Source entries, stored in ascending entry id order
    entry_id1 = Column(String(64), nullable=False)
    entry_id2 = Column(String(64), nullable=False)

    # Why the two entries were matched (JSON list of PairingBasis labels)
    matched_basis = Column(Text, nullable=False, default='[]')
    timestamp_delta_seconds = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=func.now())
    dissolved_at = Column(DateTime, nullable=True)

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    category = relationship("Category")
    player1 = relationship("Player", foreign_keys=[player1_id])
    player2 = relationship("Player", foreign_keys=[player2_id])
    run = relationship("Run", back_populates="coop_pair", uselist=False, foreign_keys="Run.coop_pair_id")

    __table_args__ = (
        UniqueConstraint('category_id', 'entry_id1', 'entry_id2', name='uq_coop_pair_entries'),
    )

    @property
    def is_active(self) -> bool:
        return self.dissolved_at is None

    @property
    def player_ids(self):
        return (self.player1_id, self.player2_id)

    def __repr__(self):
        return f"<CoopPair(id={self.id}, players=({self.player1_id}, {self.player2_id}), entries=({self.entry_id1}, {self.entry_id2}))>"

class Run(Base):
    """
    Persisted ranked result.

    Owned by exactly one Player (single-player categories and the per-player
    source rows of coop categories) or by one CoopPair (merged coop runs).
    """
    __tablename__ = 'runs'

    id = Column(Integer, primary_key=True)
    category_id = Column(Integer, ForeignKey('categories.id'), nullable=False)

    # Owner: Player XOR CoopPair
    player_id = Column(Integer, ForeignKey('players.id'), nullable=True)
    coop_pair_id = Column(Integer, ForeignKey('coop_pairs.id'), nullable=True)

    # Upstream entries this run was built from
    entry_id = Column(String(64), nullable=False)
    partner_entry_id = Column(String(64), nullable=True)

    # Coop source rows point at the merged run once paired
    merged_into_run_id = Column(Integer, ForeignKey('runs.id'), nullable=True)

    score = Column(Float, nullable=False)  # Time/score, lower is better
    submitted_at = Column(DateTime, nullable=False)

    # Derived on every category recompute
    rank = Column(Integer, nullable=True)
    points = Column(Float, default=0.0, nullable=False)

    # Proof state
    demo_required = Column(Boolean, default=False, nullable=False)
    video_required = Column(Boolean, default=False, nullable=False)
    demo_satisfied = Column(Boolean, default=False, nullable=False)
    video_satisfied = Column(Boolean, default=False, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    is_banned = Column(Boolean, default=False, nullable=False)
    quarantined = Column(Boolean, default=False, nullable=False)
    quarantine_reason = Column(String(200), nullable=True)

    last_seen_at = Column(DateTime, nullable=True)
    removed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    category = relationship("Category", back_populates="runs")
    player = relationship("Player", back_populates="runs", foreign_keys=[player_id])
    coop_pair = relationship("CoopPair", back_populates="run", foreign_keys=[coop_pair_id])

    __table_args__ = (
        UniqueConstraint('category_id', 'player_id', 'entry_id', name='uq_run_category_owner_entry'),
        Index('idx_runs_category_rank', 'category_id', 'rank'),
        Index('idx_runs_entry', 'entry_id'),
    )

    @property
    def is_paired(self) -> bool:
        return self.merged_into_run_id is not None

    @property
    def entry_ids(self):
        return tuple(e for e in (self.entry_id, self.partner_entry_id) if e)

    def __repr__(self):
        owner = f"player={self.player_id}" if self.player_id else f"pair={self.coop_pair_id}"
        return f"<Run(id={self.id}, {owner}, score={self.score}, rank={self.rank}, points={self.points})>"

class RunHistory(Base):
    """
    Every score an upstream entry has held, oldest first.

    The reconciler appends a row when it first sees an entry and again each
    time the entry's score or submission time changes, so a player's earlier
    times survive the in-place update of their Run.
    """
    __tablename__ = 'run_history'

    id = Column(Integer, primary_key=True)
    run_id = Column(Integer, ForeignKey('runs.id'), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey('categories.id'), nullable=False)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    entry_id = Column(String(64), nullable=False)

    score = Column(Float, nullable=False)
    submitted_at = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, nullable=False)

    run = relationship("Run")

    __table_args__ = (
        Index('idx_run_history_player', 'player_id', 'category_id'),
    )

    def __repr__(self):
        return f"<RunHistory(run_id={self.run_id}, entry={self.entry_id}, score={self.score})>"

class SyncCursor(Base):
    """
    Resumable paging position for one category.

    pass_started_at marks the start of the current full pass over the upstream
    leaderboard; it survives interrupted cycles so removal detection at the end
    of the pass still sees every entry touched since the pass began.

    totals_pending stays set from the commit of a recompute until every
    affected player total has been rewritten, so a cycle that dies in between
    leaves the rebuild for the next one. The version counter makes a recompute
    that read the cursor before an admin flagged it retry instead of clearing
    the new flag.
    """
    __tablename__ = 'sync_cursors'

    id = Column(Integer, primary_key=True)
    category_id = Column(Integer, ForeignKey('categories.id'), nullable=False, unique=True)

    position = Column(Integer, nullable=False, default=0)
    pass_started_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_cycle_complete = Column(Boolean, default=False, nullable=False)
    needs_recompute = Column(Boolean, default=False, nullable=False)
    totals_pending = Column(Boolean, default=False, nullable=False)
    last_error = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    category = relationship("Category", back_populates="cursor")

    def __repr__(self):
        return f"<SyncCursor(category_id={self.category_id}, position={self.position}, complete={self.last_cycle_complete})>"

class Configuration(Base):
    __tablename__ = 'configurations'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)  # JSON encoded
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Configuration(key='{self.key}')>"

class AuditLog(Base):
    __tablename__ = 'audit_log'

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=False)  # Discord user that made the change
    action = Column(String(50), nullable=False)
    details = Column(Text)  # JSON encoded
    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AuditLog(action='{self.action}', user_id={self.user_id})>"
