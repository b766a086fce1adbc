from sqlalchemy import (
    Column, String, Integer, Float, Text, DateTime, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sbomwatch.infrastructure.persistence.database import Base


class VulnerabilityModel(Base):
    """ORM model for imported vulnerability records"""
    __tablename__ = 'vulnerabilities'
    __table_args__ = (UniqueConstraint('identifier', 'namespace', name='uq_vulnerability_key'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String, nullable=False, index=True)
    namespace = Column(String, nullable=False, index=True)
    package_name = Column(String, nullable=False)
    package_name_normalized = Column(String, nullable=False, index=True)
    version_constraint = Column(Text, default="")
    version_format = Column(String, nullable=False)
    # JSON-encoded lists of strings
    package_qualifiers = Column(Text, default="[]")
    cpes = Column(Text, default="[]")
    related_vulnerabilities = Column(Text, default="[]")
    fixed_in_versions = Column(Text, default="[]")
    fix_state = Column(String, nullable=False)
    advisories = Column(Text, default="[]")


class VulnerabilityMetadataModel(Base):
    """ORM model for vulnerability severity and references"""
    __tablename__ = 'vulnerability_metadata'
    __table_args__ = (UniqueConstraint('identifier', 'namespace', name='uq_vulnerability_metadata_key'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String, nullable=False, index=True)
    namespace = Column(String, nullable=False)
    data_source = Column(String, default="")
    record_source = Column(String, default="")
    severity = Column(String, nullable=False)
    description = Column(Text, default="")
    urls = Column(Text, default="[]")
    cvss_vector = Column(String)
    cvss_score = Column(Float)


class FeedImportModel(Base):
    """ORM model for completed feed imports"""
    __tablename__ = 'feed_imports'

    id = Column(Integer, primary_key=True, autoincrement=True)
    checksum = Column(String)
    built = Column(String)
    schema_version = Column(String)
    imported_at = Column(DateTime)


class ProjectModel(Base):
    __tablename__ = 'projects'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)
    created_at = Column(DateTime)
    last_calculated_snapshot_id = Column(Integer, ForeignKey('snapshots.id'))

    snapshots = relationship("ProjectSnapshotModel", back_populates="project", cascade="all, delete-orphan")


class SnapshotModel(Base):
    __tablename__ = 'snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    state = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)
    error = Column(Text)
    raw_sbom = Column(Text)

    project_link = relationship("ProjectSnapshotModel", back_populates="snapshot", uselist=False)
    dependencies = relationship("DependencyModel", back_populates="snapshot")


class ProjectSnapshotModel(Base):
    __tablename__ = 'project_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    snapshot_id = Column(Integer, ForeignKey('snapshots.id'), nullable=False, unique=True)

    project = relationship("ProjectModel", back_populates="snapshots")
    snapshot = relationship("SnapshotModel", back_populates="project_link")


class ComponentModel(Base):
    __tablename__ = 'components'
    __table_args__ = (
        UniqueConstraint('component_type', 'manager', 'namespace', 'name', name='uq_component_identity'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    component_type = Column(String, nullable=False)
    manager = Column(String, nullable=False)
    # Empty string instead of NULL so the unique constraint applies
    namespace = Column(String, nullable=False, default="")
    name = Column(String, nullable=False)

    versions = relationship("ComponentVersionModel", back_populates="component")


class ComponentVersionModel(Base):
    __tablename__ = 'component_versions'
    __table_args__ = (UniqueConstraint('component_id', 'version', name='uq_component_version'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    component_id = Column(Integer, ForeignKey('components.id'), nullable=False)
    version = Column(String, nullable=False)

    component = relationship("ComponentModel", back_populates="versions")


class DependencyModel(Base):
    __tablename__ = 'dependencies'
    __table_args__ = (
        UniqueConstraint('snapshot_id', 'component_id', 'component_version_id', name='uq_dependency'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(Integer, ForeignKey('snapshots.id'), nullable=False, index=True)
    component_id = Column(Integer, ForeignKey('components.id'), nullable=False)
    component_version_id = Column(Integer, ForeignKey('component_versions.id'), nullable=False)

    snapshot = relationship("SnapshotModel", back_populates="dependencies")
    component = relationship("ComponentModel")
    component_version = relationship("ComponentVersionModel")


class AdvisoryModel(Base):
    __tablename__ = 'advisories'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    source = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    entries = relationship("AdvisoryMetadataModel", back_populates="advisory", cascade="all, delete-orphan")


class AdvisoryMetadataModel(Base):
    __tablename__ = 'advisory_metadata'
    __table_args__ = (UniqueConstraint('advisory_id', 'key', name='uq_advisory_metadata_key'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    advisory_id = Column(Integer, ForeignKey('advisories.id'), nullable=False)
    key = Column(String, nullable=False)
    value = Column(Text)

    advisory = relationship("AdvisoryModel", back_populates="entries")


class AlertModel(Base):
    __tablename__ = 'alerts'
    __table_args__ = (
        UniqueConstraint('snapshot_id', 'dependency_id', 'advisory_id', name='uq_alert_triple'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    state = Column(String, nullable=False)
    snapshot_id = Column(Integer, ForeignKey('snapshots.id'), nullable=False, index=True)
    dependency_id = Column(Integer, ForeignKey('dependencies.id'), nullable=False)
    advisory_id = Column(Integer, ForeignKey('advisories.id'), nullable=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    dependency = relationship("DependencyModel")
    advisory = relationship("AdvisoryModel")
