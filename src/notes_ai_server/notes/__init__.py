from .models import AppSettings, Image, Page, PageNode, PageSummary
from .blocks import BlockDocument
from .database import NotFoundError, PageStore, StoreError
from .engines import EngineLoadError, InferenceEngine, create_engine
from .orchestrator import AITaskOrchestrator, OrchestratorBusyError, TaskResult, TaskType

__all__ = [
    "AppSettings",
    "Image",
    "Page",
    "PageNode",
    "PageSummary",
    "BlockDocument",
    "NotFoundError",
    "PageStore",
    "StoreError",
    "EngineLoadError",
    "InferenceEngine",
    "create_engine",
    "AITaskOrchestrator",
    "OrchestratorBusyError",
    "TaskResult",
    "TaskType",
]
