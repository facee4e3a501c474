from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(Integer, primary_key=True, index=True)
    pipeline_name = Column(String, index=True, nullable=False)
    build_number = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, running, succeeded, failed
    current_stage = Column(String, nullable=True)  # source, build, deploy
    triggered_by = Column(String, nullable=True)

    # Source
    source_kind = Column(String, nullable=False)  # vcs, registry
    resolved_source_version = Column(String, nullable=True)
    source_reference = Column(JSON, nullable=True)

    # Build / deploy outputs
    image_tag = Column(String, nullable=True)
    image_uri = Column(String, nullable=True)
    deploy_result = Column(JSON, nullable=True)

    # Failure
    error_kind = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    logs = Column(Text, default="")

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed")
