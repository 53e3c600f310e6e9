"""
Artifact Store: durable record of built container images.

The store only writes rows; it never triggers anything. Fan-out is the
pipeline package's concern.
"""

from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy import desc, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.base import transaction
from ..db.models import CdPipelineModel, CdWorkflowRunnerModel, CiArtifactModel
from ..enums import CdWorkflowType
from ..errors import NotFoundError, PersistenceError
from ..schemas.artifact import ArtifactDeploymentView

logger = structlog.get_logger()


class ArtifactStore:
    """Service for CI artifacts."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, artifact: CiArtifactModel, commit: bool = True) -> CiArtifactModel:
        """Insert one artifact.

        No uniqueness beyond the primary key is enforced; callers must not
        insert the same (pipeline, digest) twice for one trigger.

        Raises:
            PersistenceError: constraint violation (e.g. missing image or digest)
        """
        return self.save_all([artifact], commit=commit)[0]

    def save_all(
        self, artifacts: Sequence[CiArtifactModel], commit: bool = True
    ) -> List[CiArtifactModel]:
        """Insert a batch of artifacts as one unit.

        With ``commit=True`` the batch is its own transaction: if any row
        fails, none are persisted. With ``commit=False`` the rows are only
        flushed and belong to the caller's transaction.
        """
        artifacts = list(artifacts)
        if not artifacts:
            return artifacts

        if commit:
            with transaction(self.db):
                self.db.add_all(artifacts)
                self.db.flush()
        else:
            try:
                self.db.add_all(artifacts)
                self.db.flush()
            except SQLAlchemyError as e:
                raise PersistenceError(str(e)) from e

        logger.debug(
            "artifacts_saved",
            count=len(artifacts),
            artifact_ids=[a.id for a in artifacts],
        )
        return artifacts

    def delete(self, artifact_id: int, commit: bool = True) -> None:
        """Remove an artifact. Only used to roll back an ingestion that triggered nothing."""
        artifact = self.get(artifact_id)
        if commit:
            with transaction(self.db):
                self.db.delete(artifact)
        else:
            self.db.delete(artifact)
            self.db.flush()
        logger.info("artifact_deleted", artifact_id=artifact_id)

    def mark_scanned(self, artifact_id: int, commit: bool = True) -> CiArtifactModel:
        """Set the scan-completed flag, the only mutation an artifact allows."""
        artifact = self.get(artifact_id)
        artifact.scanned = True
        if commit:
            with transaction(self.db):
                self.db.flush()
        else:
            self.db.flush()
        return artifact

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, artifact_id: int) -> Optional[CiArtifactModel]:
        return self.db.query(CiArtifactModel).filter(CiArtifactModel.id == artifact_id).first()

    def get(self, artifact_id: int) -> CiArtifactModel:
        artifact = self.find(artifact_id)
        if artifact is None:
            raise NotFoundError("ci_artifact", artifact_id)
        return artifact

    def get_by_ids(self, artifact_ids: Sequence[int]) -> List[CiArtifactModel]:
        if not artifact_ids:
            return []
        return (
            self.db.query(CiArtifactModel)
            .filter(CiArtifactModel.id.in_(list(artifact_ids)))
            .order_by(CiArtifactModel.id)
            .all()
        )

    def find_by_workflow_id(self, workflow_id: int) -> Optional[CiArtifactModel]:
        return (
            self.db.query(CiArtifactModel)
            .filter(CiArtifactModel.ci_workflow_id == workflow_id)
            .order_by(CiArtifactModel.id)
            .first()
        )

    def find_latest_by_pipeline(self, ci_pipeline_id: int) -> Optional[CiArtifactModel]:
        """Most recently created artifact of a CI pipeline."""
        return (
            self.db.query(CiArtifactModel)
            .filter(CiArtifactModel.pipeline_id == ci_pipeline_id)
            .order_by(desc(CiArtifactModel.created_on), desc(CiArtifactModel.id))
            .first()
        )

    def find_latest_by_pipelines(self, ci_pipeline_ids: Sequence[int]) -> Dict[int, object]:
        """Latest artifact creation time per CI pipeline."""
        if not ci_pipeline_ids:
            return {}
        rows = (
            self.db.query(CiArtifactModel.pipeline_id, func.max(CiArtifactModel.created_on))
            .filter(CiArtifactModel.pipeline_id.in_(list(ci_pipeline_ids)))
            .group_by(CiArtifactModel.pipeline_id)
            .all()
        )
        return {pipeline_id: created_on for pipeline_id, created_on in rows}

    def find_by_digest(self, image_digest: str) -> Optional[CiArtifactModel]:
        return (
            self.db.query(CiArtifactModel)
            .filter(CiArtifactModel.image_digest == image_digest)
            .order_by(desc(CiArtifactModel.id))
            .first()
        )

    def list_by_pipeline(self, ci_pipeline_id: int) -> List[CiArtifactModel]:
        return (
            self.db.query(CiArtifactModel)
            .filter(CiArtifactModel.pipeline_id == ci_pipeline_id)
            .order_by(desc(CiArtifactModel.id))
            .all()
        )

    def find_by_parent_and_pipelines(
        self, parent_artifact_id: int, ci_pipeline_ids: Sequence[int]
    ) -> List[CiArtifactModel]:
        """A parent artifact plus its clones, restricted to the given pipelines."""
        if not ci_pipeline_ids:
            return []
        return (
            self.db.query(CiArtifactModel)
            .filter(
                or_(
                    CiArtifactModel.parent_ci_artifact == parent_artifact_id,
                    CiArtifactModel.id == parent_artifact_id,
                ),
                CiArtifactModel.pipeline_id.in_(list(ci_pipeline_ids)),
            )
            .order_by(CiArtifactModel.id)
            .all()
        )

    def list_for_cd_pipeline(self, cd_pipeline_id: int, limit: int = 10) -> List[ArtifactDeploymentView]:
        """Artifacts that can feed a CD pipeline, newest first.

        Each one is annotated from the pipeline's deploy runners: ``deployed``
        and ``deployed_time`` (last deployment), and ``latest`` for the
        artifact deployed most recently.
        """
        cd_pipeline = (
            self.db.query(CdPipelineModel).filter(CdPipelineModel.id == cd_pipeline_id).first()
        )
        if cd_pipeline is None:
            raise NotFoundError("cd_pipeline", cd_pipeline_id)

        query = self.db.query(CiArtifactModel)
        if cd_pipeline.external_ci_pipeline_id is not None:
            query = query.filter(
                CiArtifactModel.external_ci_pipeline_id == cd_pipeline.external_ci_pipeline_id
            )
        elif cd_pipeline.ci_pipeline_id is not None:
            query = query.filter(CiArtifactModel.pipeline_id == cd_pipeline.ci_pipeline_id)
        else:
            return []
        artifacts = query.order_by(desc(CiArtifactModel.id)).limit(limit).all()

        deployed_rows = (
            self.db.query(
                CdWorkflowRunnerModel.ci_artifact_id,
                func.max(CdWorkflowRunnerModel.started_on),
            )
            .filter(
                CdWorkflowRunnerModel.pipeline_id == cd_pipeline_id,
                CdWorkflowRunnerModel.workflow_type == CdWorkflowType.DEPLOY.value,
            )
            .group_by(CdWorkflowRunnerModel.ci_artifact_id)
            .all()
        )
        deployed_at = {artifact_id: started_on for artifact_id, started_on in deployed_rows}
        latest_id = max(deployed_at, key=lambda k: deployed_at[k]) if deployed_at else None

        views = []
        for artifact in artifacts:
            view = ArtifactDeploymentView.model_validate(artifact)
            if artifact.id in deployed_at:
                view = view.model_copy(
                    update={
                        "deployed": True,
                        "deployed_time": deployed_at[artifact.id],
                        "latest": artifact.id == latest_id,
                    }
                )
            views.append(view)
        return views
