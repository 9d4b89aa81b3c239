"""Hybrid task runner: exact alarms plus durable, crash-resilient execution."""

from hybrid_runner.scheduler import HybridRunner, OverlapPolicy, RegisteredTask

__all__ = ["HybridRunner", "OverlapPolicy", "RegisteredTask"]
