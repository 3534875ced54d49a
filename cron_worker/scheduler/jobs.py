"""Job definitions and their YAML store.

A jobs file looks like::

    jobs:
      nightly_report:
        schedule: "0 2 * * *"
        timeout_seconds: 900
        target:
          type: shell
          command: ["node", "scripts/report.js"]
        retry:
          max_attempts: 5

``jobs`` may also be a list of definitions that each carry a ``name``.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cron_worker.scheduler.triggers import validate_cron_expression
from cron_worker.utils.error_handler import RetryConfig

logger = logging.getLogger(__name__)

JOB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
CALLABLE_REF_PATTERN = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")


class CallableTarget(BaseModel):
    """Python function referenced as ``package.module:function``."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["callable"] = "callable"
    ref: str
    kwargs: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("ref")
    @classmethod
    def validate_ref(cls, v: str) -> str:
        if not CALLABLE_REF_PATTERN.match(v):
            raise ValueError("ref must look like 'package.module:function'")
        return v


class ShellTarget(BaseModel):
    """External command; a string is split with shell-like rules (no shell)."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["shell"] = "shell"
    command: Union[str, List[str]]
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: Union[str, List[str]]) -> Union[str, List[str]]:
        if (isinstance(v, str) and not v.strip()) or (isinstance(v, list) and not v):
            raise ValueError("command cannot be empty")
        return v


class HttpTarget(BaseModel):
    """HTTP call to a webhook-style endpoint."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["http"] = "http"
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Optional[Any] = None
    expected_status: List[int] = Field(default_factory=list, description="Empty means any 2xx")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.upper()


JobTarget = Union[CallableTarget, ShellTarget, HttpTarget]


class RetryPolicy(BaseModel):
    """Per-job retry settings."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    jitter: bool = True
    retry_all_errors: bool = Field(
        default=False,
        description="Retry every failure, not only ones classified as transient",
    )

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


class LockPolicy(BaseModel):
    """Which lock a job takes and for how long."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, description="Defaults to the job name")
    ttl_seconds: Optional[float] = Field(default=None, gt=0, description="Defaults to timeout + 60s")


class JobDefinition(BaseModel):
    """A scheduled job."""

    model_config = ConfigDict(extra="forbid")

    name: str
    schedule: str
    target: JobTarget = Field(..., discriminator="type")
    description: str = ""
    enabled: bool = True
    timeout_seconds: float = Field(default=300.0, gt=0)
    misfire_grace_seconds: float = Field(default=60.0, ge=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    lock: LockPolicy = Field(default_factory=LockPolicy)
    tags: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not JOB_NAME_PATTERN.match(v):
            raise ValueError("name may only contain letters, digits, '_', '-' and '.'")
        return v

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        return validate_cron_expression(v.strip())

    @property
    def lock_name(self) -> str:
        return self.lock.name or self.name

    @property
    def lock_ttl_seconds(self) -> float:
        if self.lock.ttl_seconds is not None:
            return self.lock.ttl_seconds
        return self.timeout_seconds + 60.0


class JobStore:
    """Loads and persists job definitions from a YAML file.

    Attributes:
        path: Path of the jobs file.
        jobs: Currently loaded jobs, indexed by name.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.jobs: dict[str, JobDefinition] = {}

    def load(self) -> dict[str, JobDefinition]:
        """Load jobs from the YAML file.

        Invalid definitions are logged and skipped, so one bad entry does
        not take every other job down with it.

        Returns:
            Mapping of job name to definition.
        """
        self.jobs = {}

        if not self.path.exists():
            logger.warning("Jobs file not found: %s", self.path)
            return self.jobs

        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as exc:
            logger.error("Failed to load %s: %s", self.path, exc)
            return self.jobs

        if not isinstance(raw, dict):
            logger.error("Jobs file %s must contain a mapping with a 'jobs' key", self.path)
            return self.jobs

        job_list = raw.get("jobs") or {}

        if isinstance(job_list, dict):
            # Format: jobs: { name: {schedule: ..., target: ...} }
            for name, definition in job_list.items():
                if not isinstance(definition, dict):
                    logger.warning("Job '%s' is not a mapping, skipped", name)
                    continue
                self._add_loaded({**definition, "name": str(name)})
        elif isinstance(job_list, list):
            # Format: jobs: [{name: ..., schedule: ..., target: ...}]
            for definition in job_list:
                if not isinstance(definition, dict) or "name" not in definition:
                    logger.warning("Job entry without a name skipped: %r", definition)
                    continue
                if definition["name"] in self.jobs:
                    logger.warning("Duplicate job '%s' skipped", definition["name"])
                    continue
                self._add_loaded(definition)
        else:
            logger.error("'jobs' in %s must be a mapping or a list", self.path)

        logger.info("Loaded %d cron jobs from %s", len(self.jobs), self.path)
        return self.jobs

    def _add_loaded(self, definition: dict[str, Any]) -> None:
        try:
            job = JobDefinition(**definition)
        except ValidationError as exc:
            logger.warning("Invalid job '%s': %s", definition.get("name"), exc)
            return
        self.jobs[job.name] = job

    def get(self, name: str) -> Optional[JobDefinition]:
        return self.jobs.get(name)

    def get_enabled(self) -> list[JobDefinition]:
        """Only the enabled jobs."""
        return [job for job in self.jobs.values() if job.enabled]

    def add_job(self, job: JobDefinition) -> None:
        """Add or replace a job and persist the file."""
        self.jobs[job.name] = job
        self.save()

    def remove_job(self, name: str) -> bool:
        """Remove a job and persist the file.

        Returns:
            True if the job existed.
        """
        if name not in self.jobs:
            return False
        del self.jobs[name]
        self.save()
        return True

    def save(self) -> None:
        """Write all jobs back to the YAML file atomically."""
        data = {"jobs": {name: _dump_job(job) for name, job in self.jobs.items()}}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(
            yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False),
            encoding="utf-8",
        )
        os.replace(tmp, self.path)


def _dump_job(job: JobDefinition) -> dict[str, Any]:
    data = job.model_dump(mode="json", exclude={"name"}, exclude_defaults=True)
    # The discriminator has a default but must always be written
    data["target"] = {"type": job.target.type, **data.get("target", {})}
    return data
