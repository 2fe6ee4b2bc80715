"""In-memory mapping and transformation job repositories."""

from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional

from src.curation.mapping.models import (
    REVIEWABLE_STATUSES,
    MappingStatus,
    TopicMapping,
    TransformationJob,
)


class InMemoryMappingRepository:
    """Dict-backed implementation of MappingRepository."""

    def __init__(self) -> None:
        self._mappings: Dict[str, TopicMapping] = {}

    async def upsert_mapping(self, mapping: TopicMapping) -> TopicMapping:
        for existing in self._mappings.values():
            if existing.chunk_id == mapping.chunk_id and existing.topic_id == mapping.topic_id:
                update = {
                    "confidence_score": mapping.confidence_score,
                    "reasoning": mapping.reasoning,
                }
                if (
                    existing.status in REVIEWABLE_STATUSES
                    or mapping.status == MappingStatus.MANUAL
                ):
                    update["status"] = mapping.status
                    update["confirmed_by"] = mapping.confirmed_by
                    update["confirmed_at"] = mapping.confirmed_at
                stored = existing.model_copy(update=update)
                self._mappings[existing.id] = stored
                return stored

        self._mappings[mapping.id] = mapping
        return mapping

    async def get_mapping(self, mapping_id: str) -> Optional[TopicMapping]:
        return self._mappings.get(mapping_id)

    async def list_mappings(
        self,
        status: Optional[MappingStatus] = None,
        chunk_id: Optional[str] = None,
    ) -> List[TopicMapping]:
        mappings = [
            m for m in self._mappings.values()
            if (status is None or m.status == status)
            and (chunk_id is None or m.chunk_id == chunk_id)
        ]
        return sorted(mappings, key=lambda m: m.confidence_score, reverse=True)

    async def update_status(
        self,
        mapping_id: str,
        status: MappingStatus,
        allowed_from: FrozenSet[MappingStatus],
        operator_id: Optional[str] = None,
    ) -> Optional[TopicMapping]:
        mapping = self._mappings.get(mapping_id)
        if mapping is None or mapping.status not in allowed_from:
            return None
        update = {"status": status}
        if status == MappingStatus.CONFIRMED:
            update["confirmed_by"] = operator_id
            update["confirmed_at"] = datetime.now(timezone.utc)
        updated = mapping.model_copy(update=update)
        self._mappings[mapping_id] = updated
        return updated


class InMemoryTransformationJobRepository:
    """Dict-backed implementation of TransformationJobRepository."""

    def __init__(self) -> None:
        self._jobs: Dict[str, TransformationJob] = {}

    async def create_job(self, job: TransformationJob) -> None:
        self._jobs[job.id] = job

    async def update_job(self, job: TransformationJob) -> None:
        self._jobs[job.id] = job

    async def get_job(self, job_id: str) -> Optional[TransformationJob]:
        return self._jobs.get(job_id)

    async def list_jobs(self, mapping_id: str) -> List[TransformationJob]:
        jobs = [j for j in self._jobs.values() if j.mapping_id == mapping_id]
        return sorted(jobs, key=lambda j: j.created_at)
