from .schema import ExportedPattern, TeamExportDocument
from .sync import ConflictStrategy, TeamSync

__all__ = [
    "TeamSync",
    "ConflictStrategy",
    "TeamExportDocument",
    "ExportedPattern",
]
