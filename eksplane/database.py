"""SQL storage of clusters, node pools and workflow progress."""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    sessionmaker,
)

from eksplane.errors import NotFoundError
from eksplane.models import (
    Cluster,
    ClusterStatus,
    NodePool,
    NodePoolStatus,
    Subnet,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class ClusterRecord(Base):
    """Database model for EKS clusters."""

    __tablename__ = "eks_clusters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    region: Mapped[str] = mapped_column(String(20), nullable=False)
    secret_id: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    status: Mapped[ClusterStatus] = mapped_column(
        Enum(ClusterStatus), nullable=False, default=ClusterStatus.CREATING
    )
    status_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (UniqueConstraint("organization_id", "name"),)


class SubnetRecord(Base):
    """Database model for cluster subnets."""

    __tablename__ = "eks_subnets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cluster_id: Mapped[int] = mapped_column(ForeignKey("eks_clusters.id"), nullable=False, index=True)
    subnet_id: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    cidr: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    availability_zone: Mapped[str] = mapped_column(String(30), nullable=False, default="")


class NodePoolRecord(Base):
    """Database model for node pools."""

    __tablename__ = "eks_node_pools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cluster_id: Mapped[int] = mapped_column(ForeignKey("eks_clusters.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    instance_type: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    image: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    volume_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spot_price: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    autoscaling: Mapped[bool] = mapped_column(default=False)
    min_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    security_groups: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    subnet_ids: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    labels: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stack_id: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    status: Mapped[NodePoolStatus] = mapped_column(
        Enum(NodePoolStatus), nullable=False, default=NodePoolStatus.CREATING
    )
    status_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (UniqueConstraint("cluster_id", "name"),)


class WorkflowRunRecord(Base):
    """A single execution of a workflow."""

    __tablename__ = "workflow_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    workflow_name: Mapped[str] = mapped_column(String(100), nullable=False)
    input: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class WorkflowStepRecord(Base):
    """Outcome of one activity invocation inside a workflow run."""

    __tablename__ = "workflow_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(ForeignKey("workflow_runs.run_id"), nullable=False, index=True)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    activity_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="started")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    heartbeat: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (UniqueConstraint("run_id", "step_index"),)


STEP_STARTED = "started"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"


class Database:
    """Database connection and operations."""

    def __init__(self, database_url: str = "sqlite:///./eksplane.db"):
        """Initialize database connection."""
        self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # clusters

    def create_cluster(
        self,
        organization_id: int,
        name: str,
        region: str,
        secret_id: str,
        version: str = "",
        status: ClusterStatus = ClusterStatus.CREATING,
        subnets: Optional[list[Subnet]] = None,
        tags: Optional[dict[str, str]] = None,
    ) -> Cluster:
        """Create a new cluster record with its subnets."""
        with self.get_session() as session:
            existing = (
                session.query(ClusterRecord)
                .filter_by(organization_id=organization_id, name=name)
                .first()
            )
            if existing:
                raise ValueError(f"Cluster {name} already exists")

            record = ClusterRecord(
                organization_id=organization_id,
                name=name,
                region=region,
                secret_id=secret_id,
                version=version,
                status=status,
                status_message="",
                tags=_dumps(tags or {}),
            )
            session.add(record)
            session.flush()
            for subnet in subnets or []:
                session.add(
                    SubnetRecord(
                        cluster_id=record.id,
                        subnet_id=subnet.subnet_id,
                        cidr=subnet.cidr,
                        availability_zone=subnet.availability_zone,
                    )
                )
            session.commit()
            return self._to_cluster(session, record)

    def get_cluster(self, cluster_id: int) -> Cluster:
        """Get cluster by ID, raises NotFoundError when missing."""
        with self.get_session() as session:
            record = session.get(ClusterRecord, cluster_id)
            if not record:
                raise NotFoundError(f"Cluster {cluster_id} not found")
            return self._to_cluster(session, record)

    def set_cluster_status(self, cluster_id: int, status: ClusterStatus, message: str = "") -> Cluster:
        """Overwrite the cluster status.

        The last write wins, there is no compare-and-swap on the previous status.
        """
        with self.get_session() as session:
            record = session.get(ClusterRecord, cluster_id)
            if not record:
                raise NotFoundError(f"Cluster {cluster_id} not found")

            record.status = status
            record.status_message = message
            record.updated_at = _now()
            session.commit()
            session.refresh(record)
            return self._to_cluster(session, record)

    def set_cluster_version(self, cluster_id: int, version: str) -> Cluster:
        with self.get_session() as session:
            record = session.get(ClusterRecord, cluster_id)
            if not record:
                raise NotFoundError(f"Cluster {cluster_id} not found")

            record.version = version
            record.updated_at = _now()
            session.commit()
            session.refresh(record)
            return self._to_cluster(session, record)

    def _to_cluster(self, session: Session, record: ClusterRecord) -> Cluster:
        subnets = (
            session.query(SubnetRecord)
            .filter_by(cluster_id=record.id)
            .order_by(SubnetRecord.id)
            .all()
        )
        return Cluster(
            id=record.id,
            organization_id=record.organization_id,
            name=record.name,
            region=record.region,
            secret_id=record.secret_id,
            version=record.version,
            status=record.status,
            status_message=record.status_message,
            tags=_loads(record.tags, {}),
            subnets=[
                Subnet(subnet_id=s.subnet_id, cidr=s.cidr, availability_zone=s.availability_zone)
                for s in subnets
            ],
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    # node pools

    def list_node_pools(self, cluster_id: int) -> list[NodePool]:
        with self.get_session() as session:
            records = (
                session.query(NodePoolRecord)
                .filter_by(cluster_id=cluster_id)
                .order_by(NodePoolRecord.name)
                .all()
            )
            return [self._to_node_pool(r) for r in records]

    def get_node_pool(self, cluster_id: int, name: str) -> NodePool:
        with self.get_session() as session:
            record = session.query(NodePoolRecord).filter_by(cluster_id=cluster_id, name=name).first()
            if not record:
                raise NotFoundError(f"Node pool {name} of cluster {cluster_id} not found")
            return self._to_node_pool(record)

    def create_node_pool(self, cluster_id: int, node_pool: NodePool) -> NodePool:
        """Store a node pool, a row with the same name is overwritten.

        Re-running the creation of an already stored node pool is a no-op
        apart from the refreshed fields.
        """
        with self.get_session() as session:
            record = (
                session.query(NodePoolRecord)
                .filter_by(cluster_id=cluster_id, name=node_pool.name)
                .first()
            )
            if not record:
                record = NodePoolRecord(cluster_id=cluster_id, name=node_pool.name)
                session.add(record)
            self._apply_node_pool(record, node_pool)
            session.commit()
            session.refresh(record)
            return self._to_node_pool(record)

    def update_node_pool(self, cluster_id: int, node_pool: NodePool) -> NodePool:
        with self.get_session() as session:
            record = (
                session.query(NodePoolRecord)
                .filter_by(cluster_id=cluster_id, name=node_pool.name)
                .first()
            )
            if not record:
                raise NotFoundError(f"Node pool {node_pool.name} of cluster {cluster_id} not found")
            self._apply_node_pool(record, node_pool)
            session.commit()
            session.refresh(record)
            return self._to_node_pool(record)

    def set_node_pool_status(
        self,
        cluster_id: int,
        name: str,
        status: NodePoolStatus,
        message: str = "",
        stack_id: Optional[str] = None,
        image: Optional[str] = None,
        volume_size: Optional[int] = None,
    ) -> Optional[NodePool]:
        """Update node pool status, returns None for unknown node pools.

        Launch settings changed by an infrastructure update are saved along.
        """
        with self.get_session() as session:
            record = session.query(NodePoolRecord).filter_by(cluster_id=cluster_id, name=name).first()
            if not record:
                return None

            record.status = status
            record.status_message = message
            if stack_id:
                record.stack_id = stack_id
            if image:
                record.image = image
            if volume_size:
                record.volume_size = volume_size
            record.updated_at = _now()
            session.commit()
            session.refresh(record)
            return self._to_node_pool(record)

    def delete_node_pool(self, cluster_id: int, name: str) -> bool:
        """Delete a node pool row, deleting a missing row is not an error."""
        with self.get_session() as session:
            record = session.query(NodePoolRecord).filter_by(cluster_id=cluster_id, name=name).first()
            if not record:
                return False
            session.delete(record)
            session.commit()
            return True

    @staticmethod
    def _apply_node_pool(record: NodePoolRecord, node_pool: NodePool) -> None:
        record.created_by = node_pool.created_by
        record.instance_type = node_pool.instance_type
        record.image = node_pool.image
        record.volume_size = node_pool.volume_size
        record.spot_price = node_pool.spot_price
        record.autoscaling = node_pool.autoscaling
        record.min_count = node_pool.min_count
        record.max_count = node_pool.max_count
        record.count = node_pool.count
        record.security_groups = _dumps(node_pool.security_groups)
        record.subnet_ids = _dumps(node_pool.subnet_ids)
        record.labels = _dumps(node_pool.labels)
        record.stack_id = node_pool.stack_id
        record.status = node_pool.status
        record.status_message = node_pool.status_message
        record.updated_at = _now()

    @staticmethod
    def _to_node_pool(record: NodePoolRecord) -> NodePool:
        return NodePool(
            name=record.name,
            created_by=record.created_by,
            instance_type=record.instance_type,
            image=record.image,
            volume_size=record.volume_size,
            spot_price=record.spot_price,
            autoscaling=record.autoscaling,
            min_count=record.min_count,
            max_count=record.max_count,
            count=record.count,
            security_groups=_loads(record.security_groups, []),
            subnet_ids=_loads(record.subnet_ids, []),
            labels=_loads(record.labels, {}),
            stack_id=record.stack_id,
            status=record.status,
            status_message=record.status_message,
        )

    # workflow runs

    def start_run(
        self,
        run_id: str,
        workflow_id: str,
        workflow_name: str,
        input: Optional[dict] = None,
    ) -> bool:
        """Register a workflow run, returns False if the run already exists."""
        with self.get_session() as session:
            record = session.get(WorkflowRunRecord, run_id)
            if record:
                record.status = RUN_RUNNING
                record.error = None
                session.commit()
                return False

            session.add(
                WorkflowRunRecord(
                    run_id=run_id,
                    workflow_id=workflow_id,
                    workflow_name=workflow_name,
                    input=_dumps(input),
                    status=RUN_RUNNING,
                )
            )
            session.commit()
            return True

    def finish_run(self, run_id: str, status: str, error: Optional[str] = None) -> None:
        with self.get_session() as session:
            record = session.get(WorkflowRunRecord, run_id)
            if not record:
                return
            record.status = status
            record.error = error
            session.commit()

    def get_run(self, run_id: str) -> Optional[WorkflowRunRecord]:
        with self.get_session() as session:
            return session.get(WorkflowRunRecord, run_id)

    def list_running_runs(self) -> list[WorkflowRunRecord]:
        with self.get_session() as session:
            return (
                session.query(WorkflowRunRecord)
                .filter_by(status=RUN_RUNNING)
                .order_by(WorkflowRunRecord.created_at)
                .all()
            )

    def run_input(self, run: WorkflowRunRecord) -> Optional[dict]:
        return _loads(run.input)

    # workflow steps

    def get_step(self, run_id: str, step_index: int) -> Optional[WorkflowStepRecord]:
        with self.get_session() as session:
            return (
                session.query(WorkflowStepRecord)
                .filter_by(run_id=run_id, step_index=step_index)
                .first()
            )

    def list_steps(self, run_id: str) -> list[WorkflowStepRecord]:
        with self.get_session() as session:
            return (
                session.query(WorkflowStepRecord)
                .filter_by(run_id=run_id)
                .order_by(WorkflowStepRecord.step_index)
                .all()
            )

    def start_step(self, run_id: str, step_index: int, activity_name: str) -> WorkflowStepRecord:
        """Mark a step as started, keeping the heartbeat of an earlier attempt."""
        with self.get_session() as session:
            record = (
                session.query(WorkflowStepRecord)
                .filter_by(run_id=run_id, step_index=step_index)
                .first()
            )
            if not record:
                record = WorkflowStepRecord(
                    run_id=run_id,
                    step_index=step_index,
                    activity_name=activity_name,
                    attempts=0,
                )
                session.add(record)
            record.status = STEP_STARTED
            record.error = None
            session.commit()
            session.refresh(record)
            return record

    def record_attempt(self, run_id: str, step_index: int) -> None:
        with self.get_session() as session:
            record = (
                session.query(WorkflowStepRecord)
                .filter_by(run_id=run_id, step_index=step_index)
                .first()
            )
            if record:
                record.attempts += 1
                session.commit()

    def record_heartbeat(self, run_id: str, step_index: int, details: Any) -> None:
        with self.get_session() as session:
            record = (
                session.query(WorkflowStepRecord)
                .filter_by(run_id=run_id, step_index=step_index)
                .first()
            )
            if record:
                record.heartbeat = _dumps(details)
                session.commit()

    def step_heartbeat(self, run_id: str, step_index: int) -> Any:
        record = self.get_step(run_id, step_index)
        if not record:
            return None
        return _loads(record.heartbeat)

    def complete_step(self, run_id: str, step_index: int, result: Any) -> None:
        with self.get_session() as session:
            record = (
                session.query(WorkflowStepRecord)
                .filter_by(run_id=run_id, step_index=step_index)
                .first()
            )
            if record:
                record.status = STEP_COMPLETED
                record.result = _dumps(result)
                record.error = None
                session.commit()

    def fail_step(self, run_id: str, step_index: int, error: str) -> None:
        with self.get_session() as session:
            record = (
                session.query(WorkflowStepRecord)
                .filter_by(run_id=run_id, step_index=step_index)
                .first()
            )
            if record:
                record.status = STEP_FAILED
                record.error = error
                session.commit()

    def step_result(self, record: WorkflowStepRecord) -> Any:
        return _loads(record.result)
