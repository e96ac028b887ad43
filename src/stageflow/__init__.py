from .dsl import job, rule, need, artifacts, pipeline
from .config import PipelineConfig, load_config, parse_config
from .context import Context, TriggerEvent
from .errors import ConfigurationError
from .runner import PipelineRun, PipelineRegistry, create_pipeline, run_pipeline
from .scheduler import Scheduler

__all__ = [
    "job", "rule", "need", "artifacts", "pipeline",
    "PipelineConfig", "load_config", "parse_config",
    "Context", "TriggerEvent", "ConfigurationError",
    "PipelineRun", "PipelineRegistry", "create_pipeline", "run_pipeline",
    "Scheduler",
]
