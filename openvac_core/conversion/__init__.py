from openvac_core.conversion.cancel import CancelToken
from openvac_core.conversion.events import (
    Done,
    Error,
    Extracting,
    Progress,
    ProgressEvent,
    event_from_dict,
    is_terminal,
)
from openvac_core.conversion.lines import (
    ExtractedLine,
    LineScanner,
    ProgressLine,
    RasterizerLineScanner,
    UnrecognizedLine,
)
from openvac_core.conversion.orchestrator import (
    ConversionOrchestrator,
    ConversionOutcome,
    ConversionRun,
    RunState,
)
from openvac_core.conversion.settings import ConversionSettings

__all__ = [
    "CancelToken",
    "ConversionOrchestrator",
    "ConversionOutcome",
    "ConversionRun",
    "ConversionSettings",
    "Done",
    "Error",
    "ExtractedLine",
    "Extracting",
    "LineScanner",
    "Progress",
    "ProgressEvent",
    "ProgressLine",
    "RasterizerLineScanner",
    "RunState",
    "UnrecognizedLine",
    "event_from_dict",
    "is_terminal",
]
