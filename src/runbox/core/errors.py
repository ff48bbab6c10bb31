from __future__ import annotations


class RunboxError(Exception):
    """Base class for every error raised by the execution service."""


class SubmissionError(RunboxError):
    """The caller sent something it can fix (4xx at the HTTP edge)."""

    code = "invalid_submission"
    status_code = 400


class UnsupportedLanguage(SubmissionError):
    code = "unsupported_language"
    status_code = 400


class InvalidBudget(SubmissionError):
    code = "invalid_budget"
    status_code = 422


class SubmissionTooLarge(SubmissionError):
    code = "payload_too_large"
    status_code = 413


class SandboxSetupError(RunboxError):
    """Isolation or a limit could not be applied; the job ends as SandboxFailure."""


class InvalidJobId(SubmissionError):
    code = "invalid_job_id"
    status_code = 422


class DuplicateJobId(SubmissionError):
    code = "duplicate_job_id"
    status_code = 409
