"""Extension loading and hand-off for the detection client.

An extension is any importable module exposing an optional
``initialize(context)`` and (deprecated) ``finalize(context)``. Either may be
a plain function or a coroutine function. Extensions run isolated from one
another: a failure is logged against the extension and never stops the
others or the base URL Metric submission.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Callable, Mapping, Optional

from url_metrics.detection.environment import MetricCallback
from url_metrics.detection.record import URLMetricRecord

logger = logging.getLogger(__name__)

EXTENSION_LOGGER_PREFIX = "url_metrics.extensions"


@dataclass
class LoadedExtension:
    module_name: str
    module: ModuleType

    @property
    def name(self) -> str:
        return getattr(self.module, "name", None) or self.module_name.rsplit(".", 1)[-1]

    @property
    def initialize(self) -> Optional[Callable[..., Any]]:
        hook = getattr(self.module, "initialize", None)
        return hook if callable(hook) else None

    @property
    def finalize(self) -> Optional[Callable[..., Any]]:
        hook = getattr(self.module, "finalize", None)
        return hook if callable(hook) else None

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(f"{EXTENSION_LOGGER_PREFIX}.{self.name}")


@dataclass
class ExtensionContext:
    is_debug: bool
    logger: logging.Logger
    get_root_data: Callable[[], Mapping[str, Any]]
    extend_root_data: Callable[[Mapping[str, Any]], None]
    get_element_data: Callable[[str], Optional[Mapping[str, Any]]]
    extend_element_data: Callable[[str, Mapping[str, Any]], None]
    on_ttfb: Optional[Callable[..., None]] = None
    on_fcp: Optional[Callable[..., None]] = None
    on_lcp: Optional[Callable[..., None]] = None
    on_inp: Optional[Callable[..., None]] = None
    on_cls: Optional[Callable[..., None]] = None
    extra: dict[str, Any] = field(default_factory=dict)


def build_context(
    extension: LoadedExtension,
    record: URLMetricRecord,
    is_debug: bool,
    on_metric: Optional[Callable[[str, MetricCallback, bool], None]] = None,
) -> ExtensionContext:
    """Context for initialize(); omit on_metric for the finalize context."""

    def passthrough(metric_name: str) -> Optional[Callable[..., None]]:
        if on_metric is None:
            return None

        def subscribe(callback: MetricCallback, report_all_changes: bool = False) -> None:
            on_metric(metric_name, callback, report_all_changes)

        return subscribe

    return ExtensionContext(
        is_debug=is_debug,
        logger=extension.logger,
        get_root_data=record.get_root_data,
        extend_root_data=record.extend_root_data,
        get_element_data=record.get_element_data,
        extend_element_data=record.extend_element_data,
        on_ttfb=passthrough("TTFB"),
        on_fcp=passthrough("FCP"),
        on_lcp=passthrough("LCP"),
        on_inp=passthrough("INP"),
        on_cls=passthrough("CLS"),
    )


def load_extensions(module_names: list[str]) -> list[LoadedExtension]:
    loaded = []
    for module_name in module_names:
        try:
            module = importlib.import_module(module_name)
        except Exception as e:
            logger.error("[URL Metrics] Failed to load extension '%s': %s", module_name, e)
            continue
        loaded.append(LoadedExtension(module_name=module_name, module=module))
    return loaded


async def _call_hook(hook: Callable[..., Any], context: ExtensionContext) -> None:
    result = hook(context)
    if inspect.isawaitable(result):
        await result


async def run_hooks_settled(
    hooks: list[tuple[LoadedExtension, Callable[..., Any], ExtensionContext]],
    phase: str,
) -> list[BaseException | None]:
    """Run hooks concurrently and wait for all of them (all-settled semantics)."""
    results = await asyncio.gather(
        *(_call_hook(hook, context) for _, hook, context in hooks),
        return_exceptions=True,
    )
    outcomes: list[BaseException | None] = []
    for (extension, _, _), result in zip(hooks, results):
        if isinstance(result, Exception):
            logger.error(
                "[URL Metrics] Failed to %s extension '%s': %s",
                phase, extension.module_name, result,
            )
            outcomes.append(result)
        elif isinstance(result, BaseException):
            raise result
        else:
            outcomes.append(None)
    return outcomes


async def initialize_extensions(
    extensions: list[LoadedExtension],
    record: URLMetricRecord,
    is_debug: bool,
    on_metric: Callable[[str, MetricCallback, bool], None],
) -> bool:
    """Initialize every extension; returns whether any still uses finalize()."""
    hooks = []
    has_finalize = False
    for extension in extensions:
        if extension.initialize is not None:
            context = build_context(extension, record, is_debug, on_metric)
            hooks.append((extension, extension.initialize, context))
        if extension.finalize is not None:
            extension.logger.warning(
                "Use of the finalize function in extensions is deprecated. Update the "
                "URL Metric from initialize as soon as a change is detected instead."
            )
            has_finalize = True
    await run_hooks_settled(hooks, "initialize")
    return has_finalize


async def finalize_extensions(
    extensions: list[LoadedExtension], record: URLMetricRecord, is_debug: bool,
) -> None:
    hooks = [
        (extension, extension.finalize, build_context(extension, record, is_debug))
        for extension in extensions
        if extension.finalize is not None
    ]
    if hooks:
        await run_hooks_settled(hooks, "finalize")
