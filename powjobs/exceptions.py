"""Error types shared by the manager, the worker and the chain adapters."""
from __future__ import annotations


class PowJobsError(Exception):
    """Base exception for the proof-of-work job engine."""


class ValidationError(PowJobsError):
    """Job parameters were rejected before any worker was spawned."""


class HeightOracleError(PowJobsError):
    """No block height could be obtained, observed or estimated."""


class PersistenceError(PowJobsError):
    """The job registry could not be written to durable storage."""


class WorkerProtocolError(PowJobsError):
    """The worker received a job payload it could not decode."""


class StoreLockedError(PersistenceError):
    """Another live manager already owns the job registry file."""
