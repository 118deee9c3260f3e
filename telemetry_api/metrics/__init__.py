"""Métricas de uso por cuenta."""

from .ingestion_metrics import SENSOR_VALUES_PER_MINUTE, MetricsRecorder, metric_bucket

__all__ = ["SENSOR_VALUES_PER_MINUTE", "MetricsRecorder", "metric_bucket"]
