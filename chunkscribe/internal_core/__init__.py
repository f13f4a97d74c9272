from .config import ChunkingConfig, PipelineConfig, load_config
from .job_store import InMemoryJobStore

__all__ = ["ChunkingConfig", "PipelineConfig", "load_config", "InMemoryJobStore"]
