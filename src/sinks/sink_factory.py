# src/sinks/sink_factory.py — v1
"""Factory: instantiate the output sink from configuration."""

from __future__ import annotations

from catalogscan.config.settings import ConfigurationError, Settings
from catalogscan.sinks.base_sink import BaseSink
from catalogscan.sinks.local_sink import LocalSink
from catalogscan.sinks.retry import RetryingSink, RetryPolicy


def create_sink(settings: Settings, with_retry: bool = True) -> BaseSink:
    """Create the configured sink, wrapped in the retry layer by default.

    Raises:
        ConfigurationError: If the sink type is unsupported or incomplete.
    """
    sink: BaseSink
    if settings.sink_type == "local":
        sink = LocalSink(settings.resolved_output_dir)
    elif settings.sink_type == "remote":
        from catalogscan.sinks.remote_sink import RemoteSink

        if not settings.remote_url:
            raise ConfigurationError("REMOTE_URL must be set when SINK_TYPE=remote")
        sink = RemoteSink(
            base_url=settings.remote_url,
            api_key=settings.remote_api_key,
            timeout_s=settings.remote_timeout_s,
        )
    else:
        raise ConfigurationError(f"Unsupported sink type: {settings.sink_type!r}")

    if with_retry:
        return RetryingSink(sink, RetryPolicy.from_settings(settings))
    return sink
