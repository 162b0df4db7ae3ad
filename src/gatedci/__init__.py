from .dsl import container_action, matrix, pipeline, run, stage, uses, when
from .loader import load_pipeline, load_pipeline_from_dict
from .model import PipelineDefinition, RunStatus, TriggerContext
from .scheduler import CancelToken, Scheduler, plan, run_pipeline

__all__ = [
    "container_action",
    "matrix",
    "pipeline",
    "run",
    "stage",
    "uses",
    "when",
    "load_pipeline",
    "load_pipeline_from_dict",
    "PipelineDefinition",
    "RunStatus",
    "TriggerContext",
    "CancelToken",
    "Scheduler",
    "plan",
    "run_pipeline",
]
