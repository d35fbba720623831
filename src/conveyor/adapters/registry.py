"""Adapter registry — binds stage adapters from conveyor.toml [adapters]."""

from __future__ import annotations
import logging
import os
import re
from typing import Dict, Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from conveyor.adapters.base import Adapter
from conveyor.core.errors import LoadError
from conveyor.pipeline.definition import PipelineDefinition, StageSpec

logger = logging.getLogger("conveyor.adapters")

_ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')


class AdapterOptions(BaseModel):
    """Recognized options of one [adapters.<name>] table."""

    model_config = ConfigDict(extra="forbid")

    type: str
    endpoint: str | None = None
    credential: SecretStr | None = None
    timeout: float = Field(default=30, gt=0)
    concurrency_limit: int | None = Field(default=None, ge=1)

    def redacted(self) -> dict:
        data = self.model_dump(exclude={"credential"})
        data["credential"] = "***" if self.credential else None
        return data


class AdapterRegistry:
    """Registry of adapter instances by binding name.

    A stage is executed by the binding named in its `adapter` field, or by
    the binding named after its kind.
    """

    def __init__(self, adapters_config: Dict[str, Dict[str, Any]] | None = None):
        """Initialize the adapter registry.

        Args:
            adapters_config: Dict from [adapters] section of conveyor.toml
        """
        self._adapters: Dict[str, Adapter] = {}
        self._options: Dict[str, AdapterOptions] = {}
        self._adapter_factories = {
            'http': self._get_http,
        }
        for name, config in (adapters_config or {}).items():
            self._options[name] = self._parse_options(name, config)

    def register(self, name: str, adapter: Adapter) -> None:
        """Bind an adapter instance directly."""
        self._adapters[name] = adapter

    def list_bindings(self) -> Dict[str, dict]:
        """List configured bindings with credentials redacted."""
        bindings = {name: opts.redacted() for name, opts in self._options.items()}
        for name, adapter in self._adapters.items():
            bindings.setdefault(name, {"type": type(adapter).__name__})
        return bindings

    def get(self, name: str) -> Adapter:
        """Get the adapter for a binding, creating it from config on first use.

        Raises:
            KeyError: If binding name not found
        """
        if name in self._adapters:
            return self._adapters[name]
        if name not in self._options:
            raise KeyError(f"Adapter binding '{name}' not found. Available: {sorted(self.list_bindings())}")

        options = self._options[name]
        adapter = self._adapter_factories[options.type](options)
        self._adapters[name] = adapter
        logger.info(f"Bound adapter '{name}': {options.redacted()}")
        return adapter

    def for_stage(self, spec: StageSpec) -> Adapter:
        try:
            adapter = self.get(spec.binding)
        except KeyError as e:
            raise LoadError(f"Stage '{spec.name}': {e.args[0]}") from e
        except ValueError as e:
            raise LoadError(f"Stage '{spec.name}': {e}") from e
        if spec.kind not in adapter.kinds:
            raise LoadError(
                f"Stage '{spec.name}' is a {spec.kind.value} stage but binding "
                f"'{spec.binding}' is a {type(adapter).__name__}"
            )
        return adapter

    def validate(self, definition: PipelineDefinition) -> None:
        """Check every stage has a compatible binding. Raises LoadError."""
        for spec in definition.stages:
            self.for_stage(spec)

    async def close(self) -> None:
        for name, adapter in self._adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Error closing adapter '{name}': {e}")

    def _parse_options(self, name: str, config: Dict[str, Any]) -> AdapterOptions:
        config = dict(config)
        adapter_type = config.get('type')
        if not adapter_type:
            raise ValueError(f"Adapter '{name}' missing required 'type' field")
        if adapter_type not in self._adapter_factories:
            raise ValueError(
                f"Unsupported adapter type '{adapter_type}'. "
                f"Supported: {list(self._adapter_factories.keys())}"
            )
        try:
            return AdapterOptions(**self._resolve_env_vars(config))
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            raise ValueError(f"Invalid options for adapter '{name}': {problems}") from None

    def _resolve_env_vars(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve ${ENV_VAR} and ${ENV_VAR:-default} references in config values.

        Raises:
            ValueError: If required environment variable is not set
        """
        resolved = {}
        for key, value in config.items():
            if isinstance(value, str):
                resolved[key] = self._resolve_env_var_string(value)
            else:
                resolved[key] = value
        return resolved

    def _resolve_env_var_string(self, value: str) -> str:
        def replace_env_var(match):
            var_expr = match.group(1)

            # Handle default value syntax: VAR:-default
            if ':-' in var_expr:
                var_name, default = var_expr.split(':-', 1)
                return os.environ.get(var_name.strip(), default)
            var_name = var_expr.strip()
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(f"Environment variable '{var_name}' is not set")
            return env_value

        return _ENV_VAR_PATTERN.sub(replace_env_var, value)

    def _get_http(self, options: AdapterOptions) -> Adapter:
        from conveyor.adapters.http import HttpAdapter
        if not options.endpoint:
            raise ValueError("http adapter requires an 'endpoint'")
        return HttpAdapter(
            endpoint=options.endpoint,
            credential=options.credential.get_secret_value() if options.credential else None,
            timeout=options.timeout,
            concurrency_limit=options.concurrency_limit,
        )
