"""Error types shared across the analysis pipeline."""


class CriticalError(Exception):
    """An error that must stop the job it occurs in.

    The batch worker marks the job ``failed`` with ``str(error)`` when one of
    these escapes; every other error is absorbed into per-item retry state.
    """
