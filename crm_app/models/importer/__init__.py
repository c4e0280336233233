from .schema import ImportFailedRow, ImportRun, ImportRunStatus

__all__ = ["ImportRun", "ImportRunStatus", "ImportFailedRow"]
