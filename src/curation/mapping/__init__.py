"""Mapping and transformation.

Records chunk-to-topic mappings with confidence-based auto-mapping and
turns mapped chunks into DRAFT curation items through the external
transformation service.
"""

from src.curation.mapping.client import HttpTransformationClient
from src.curation.mapping.memory import (
    InMemoryMappingRepository,
    InMemoryTransformationJobRepository,
)
from src.curation.mapping.models import (
    DEFAULT_AUTO_MAP_THRESHOLD,
    DEFAULT_MIN_CONFIDENCE,
    JobStatus,
    MappingStatus,
    TopicMapping,
    TransformationJob,
    TransformationResult,
)
from src.curation.mapping.repository import (
    PostgresMappingRepository,
    PostgresTransformationJobRepository,
)
from src.curation.mapping.service import (
    MappingNotFoundError,
    MappingRepository,
    MappingService,
    MappingStateError,
)
from src.curation.mapping.transformation import (
    ExternalServiceError,
    TransformationClient,
    TransformationJobRepository,
    TransformationService,
)

__all__ = [
    # Models
    "DEFAULT_AUTO_MAP_THRESHOLD",
    "DEFAULT_MIN_CONFIDENCE",
    "JobStatus",
    "MappingStatus",
    "TopicMapping",
    "TransformationJob",
    "TransformationResult",
    # Services
    "MappingNotFoundError",
    "MappingRepository",
    "MappingService",
    "MappingStateError",
    "ExternalServiceError",
    "TransformationClient",
    "TransformationJobRepository",
    "TransformationService",
    # Clients
    "HttpTransformationClient",
    # Repositories
    "InMemoryMappingRepository",
    "InMemoryTransformationJobRepository",
    "PostgresMappingRepository",
    "PostgresTransformationJobRepository",
]
