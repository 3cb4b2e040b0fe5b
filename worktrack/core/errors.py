class WorkTrackingError(Exception):
    """Base class for work tracking failures."""


class StoreError(WorkTrackingError):
    """A counter or work store operation failed."""


class OrphanRiskError(StoreError):
    """Only one of the two stores was written and the compensation failed.

    The counter or the work record of ``work_id`` may be left behind and has
    to be reconciled by an operator.
    """

    def __init__(self, message: str, work_id: str):
        super().__init__(message)
        self.work_id = work_id
