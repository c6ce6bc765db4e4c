"""
config/models.py

Lightweight DB-backed configuration.

SystemSetting — key/value overrides for the bulk importer's batch knobs,
editable in Django admin without a redeploy.
"""

import logging

from django.db import models

logger = logging.getLogger(__name__)


class SystemSetting(models.Model):
    """
    Key/value store for runtime-configurable settings.

    Known keys (all positive integer strings):
      bulk_import_batch_size          — files per invocation (e.g. "5")
      bulk_import_max_execution_ms    — time budget per invocation (e.g. "20000")
      bulk_import_heartbeat_interval  — files between heartbeats (e.g. "2")
    """

    key = models.CharField(max_length=100, unique=True)
    value = models.TextField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "System Setting"
        verbose_name_plural = "System Settings"

    def __str__(self):
        return f"{self.key} = {self.value}"

    # ── Convenience helpers ───────────────────────────────────────────────────

    @classmethod
    def get_positive_ints(cls, defaults: dict[str, int]) -> dict[str, int]:
        """
        Resolve several integer knobs in one query.

        Each key in ``defaults`` takes its stored value when that value parses
        to an integer >= 1; a missing row keeps the default silently, a bad
        row keeps it with a warning.
        """
        stored = dict(cls.objects.filter(key__in=defaults).values_list("key", "value"))
        resolved = {}
        for key, default in defaults.items():
            raw = stored.get(key)
            if raw is None:
                resolved[key] = default
                continue
            try:
                value = int(raw.strip())
            except ValueError:
                value = 0
            if value < 1:
                logger.warning(
                    "SystemSetting %s=%r is not a positive integer; using %s", key, raw, default,
                )
                value = default
            resolved[key] = value
        return resolved
