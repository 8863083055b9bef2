import os
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("RELCTL_SSM_PREFIX", "")
        self.ddb_table = os.getenv("RELCTL_DDB_TABLE", "")
        self.db_path = os.getenv("RELCTL_DB_PATH", "./data/release-controller.db")

        self.revision_history_limit = self._get(
            "revision_history_limit", "RELCTL_REVISION_HISTORY_LIMIT", 10, int
        )
        self.conflict_max_attempts = self._get("conflict/max_attempts", "RELCTL_CONFLICT_MAX_ATTEMPTS", 5, int)
        self.conflict_retry_delay_seconds = self._get(
            "conflict/retry_delay_seconds", "RELCTL_CONFLICT_RETRY_DELAY_SECONDS", 0.1, float
        )
        self.short_requeue_seconds = self._get("requeue/short_seconds", "RELCTL_SHORT_REQUEUE_SECONDS", 10.0, float)
        self.medium_requeue_seconds = self._get(
            "requeue/medium_seconds", "RELCTL_MEDIUM_REQUEUE_SECONDS", 30.0, float
        )
        self.poll_requeue_seconds = self._get("requeue/poll_seconds", "RELCTL_POLL_REQUEUE_SECONDS", 30.0, float)
        self.external_sync_seconds = self._get(
            "external/sync_seconds", "RELCTL_EXTERNAL_SYNC_SECONDS", 300.0, float
        )
        self.health_check_timeout_seconds = self._get(
            "health_check/timeout_seconds", "RELCTL_HEALTH_CHECK_TIMEOUT_SECONDS", 30.0, float
        )
        self.validation_history_limit = self._get(
            "validation_history_limit", "RELCTL_VALIDATION_HISTORY_LIMIT", 50, int
        )

        self.worker_interval_seconds = self._get(
            "worker/interval_seconds", "RELCTL_WORKER_INTERVAL_SECONDS", 15.0, float
        )
        self.worker_concurrency = self._get("worker/concurrency", "RELCTL_WORKER_CONCURRENCY", 4, int)
        namespaces = self._get("worker/namespaces", "RELCTL_WORKER_NAMESPACES", "default", str)
        self.worker_namespaces = [n.strip() for n in namespaces.split(",") if n.strip()]

        cors = os.getenv("RELCTL_CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
        self.cors_origins = [o.strip() for o in cors.split(",") if o.strip()]
        self.lambda_enabled = self._as_bool(os.getenv("RELCTL_LAMBDA", "0"))

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except (ClientError, BotoCoreError):
            return None


SETTINGS = Settings()
