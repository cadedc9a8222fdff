"""
Configuration

Provides:
- Settings with environment overrides
- YAML configuration file loading (scrape targets, rule groups, probes)
- ConfigError on any invalid entry
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .alerting import AlertRule, RuleGroup
from .errors import ConfigError, MetricStoreError
from .ingestion import ScrapeTarget
from .probes import Probe
from .timeutil import parse_duration

logger = logging.getLogger("MetricStore")


@dataclass
class Settings:
    """Runtime settings"""

    data_dir: Optional[str] = None
    retention_seconds: float = 15 * 24 * 3600
    max_series_per_metric: int = 10000
    workers: int = 4
    push_ttl_seconds: float = 300.0
    lookback_seconds: float = 300.0
    max_points: int = 11000
    maintenance_interval: float = 60.0
    resolved_retention_seconds: float = 15 * 60.0
    scrape_interval: float = 15.0
    scrape_timeout: float = 10.0
    evaluation_interval: float = 60.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Defaults overridden by METRICSTORE_* environment variables"""
        env = os.environ if environ is None else environ
        settings = cls()
        try:
            if env.get("METRICSTORE_DATA_DIR"):
                settings.data_dir = env["METRICSTORE_DATA_DIR"]
            if env.get("METRICSTORE_RETENTION"):
                settings.retention_seconds = _duration(env["METRICSTORE_RETENTION"], "METRICSTORE_RETENTION")
            if env.get("METRICSTORE_MAX_SERIES_PER_METRIC"):
                settings.max_series_per_metric = int(env["METRICSTORE_MAX_SERIES_PER_METRIC"])
            if env.get("METRICSTORE_WORKERS"):
                settings.workers = int(env["METRICSTORE_WORKERS"])
            if env.get("METRICSTORE_PUSH_TTL"):
                settings.push_ttl_seconds = _duration(env["METRICSTORE_PUSH_TTL"], "METRICSTORE_PUSH_TTL")
            if env.get("METRICSTORE_MAINTENANCE_INTERVAL"):
                settings.maintenance_interval = _duration(
                    env["METRICSTORE_MAINTENANCE_INTERVAL"], "METRICSTORE_MAINTENANCE_INTERVAL"
                )
        except ValueError as e:
            raise ConfigError(f"invalid environment setting: {e}")
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.retention_seconds <= 0:
            raise ConfigError("retention must be positive")
        if self.max_series_per_metric < 1:
            raise ConfigError("max_series_per_metric must be at least 1")
        if self.workers < 1:
            raise ConfigError("workers must be at least 1")
        if self.maintenance_interval <= 0:
            raise ConfigError("maintenance_interval must be positive")

    def to_dict(self) -> dict:
        return {
            "data_dir": self.data_dir,
            "retention_seconds": self.retention_seconds,
            "max_series_per_metric": self.max_series_per_metric,
            "workers": self.workers,
            "push_ttl_seconds": self.push_ttl_seconds,
            "lookback_seconds": self.lookback_seconds,
            "max_points": self.max_points,
            "maintenance_interval": self.maintenance_interval,
            "resolved_retention_seconds": self.resolved_retention_seconds,
            "scrape_interval": self.scrape_interval,
            "scrape_timeout": self.scrape_timeout,
            "evaluation_interval": self.evaluation_interval
        }


@dataclass
class MetricStoreConfig:
    """Everything loaded from a configuration file"""

    settings: Settings = field(default_factory=Settings)
    scrape_targets: List[ScrapeTarget] = field(default_factory=list)
    rule_groups: List[RuleGroup] = field(default_factory=list)
    probes: List[Probe] = field(default_factory=list)


def _duration(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValueError(f"{where}: expected a duration, got {value!r}")
    try:
        return parse_duration(value)
    except ValueError:
        raise ValueError(f"{where}: invalid duration {value!r}")


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping")
    return value


def _string_map(value: Any, where: str) -> Dict[str, str]:
    return {str(k): str(v) for k, v in _mapping(value, where).items()}


def _list(value: Any, where: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list")
    return value


def _apply_global(settings: Settings, section: Dict[str, Any]) -> None:
    durations = {
        "scrape_interval": "scrape_interval",
        "scrape_timeout": "scrape_timeout",
        "evaluation_interval": "evaluation_interval",
        "retention": "retention_seconds",
        "push_ttl": "push_ttl_seconds",
        "maintenance_interval": "maintenance_interval",
        "lookback": "lookback_seconds",
        "resolved_retention": "resolved_retention_seconds",
    }
    for key, value in section.items():
        if key in durations:
            setattr(settings, durations[key], _duration(value, f"global.{key}"))
        elif key in ("max_series_per_metric", "workers", "max_points"):
            setattr(settings, key, int(value))
        elif key == "data_dir":
            settings.data_dir = str(value)
        else:
            raise ConfigError(f"global: unknown setting {key!r}")


def _scrape_targets(section: List[Any], settings: Settings) -> List[ScrapeTarget]:
    targets: List[ScrapeTarget] = []
    for i, entry in enumerate(section):
        where = f"scrape_configs[{i}]"
        entry = _mapping(entry, where)
        job = entry.get("job_name")
        if not job:
            raise ConfigError(f"{where}: job_name is required")
        interval = _duration(entry.get("interval", settings.scrape_interval), f"{where}.interval")
        timeout = _duration(
            entry.get("timeout", min(settings.scrape_timeout, interval)), f"{where}.timeout"
        )
        urls = _list(entry.get("targets"), f"{where}.targets")
        if not urls:
            raise ConfigError(f"{where}: at least one target is required")
        for url in urls:
            targets.append(ScrapeTarget(
                job=str(job),
                url=str(url),
                interval=interval,
                timeout=timeout,
                labels=_string_map(entry.get("labels"), f"{where}.labels"),
                honor_labels=bool(entry.get("honor_labels", False))
            ))
    return targets


def _rule_groups(section: List[Any], settings: Settings) -> List[RuleGroup]:
    groups: List[RuleGroup] = []
    for i, entry in enumerate(section):
        where = f"rule_groups[{i}]"
        entry = _mapping(entry, where)
        name = entry.get("name")
        if not name:
            raise ConfigError(f"{where}: name is required")
        rules: List[AlertRule] = []
        for j, raw in enumerate(_list(entry.get("rules"), f"{where}.rules")):
            rule_where = f"{where}.rules[{j}]"
            raw = _mapping(raw, rule_where)
            if not raw.get("alert") or not raw.get("expr"):
                raise ConfigError(f"{rule_where}: alert and expr are required")
            rule = AlertRule(
                name=str(raw["alert"]),
                expr=str(raw["expr"]),
                for_duration=_duration(raw.get("for", 0), f"{rule_where}.for"),
                labels=_string_map(raw.get("labels"), f"{rule_where}.labels"),
                annotations=_string_map(raw.get("annotations"), f"{rule_where}.annotations")
            )
            if "repeat_interval" in raw:
                rule.repeat_interval = _duration(raw["repeat_interval"], f"{rule_where}.repeat_interval")
            try:
                rule.validate()
            except MetricStoreError as e:
                raise ConfigError(f"{rule_where}: {e}")
            rules.append(rule)
        interval = _duration(entry.get("interval", settings.evaluation_interval), f"{where}.interval")
        groups.append(RuleGroup(name=str(name), interval=interval, rules=rules))
    return groups


def _probes(section: List[Any]) -> List[Probe]:
    probes: List[Probe] = []
    for i, entry in enumerate(section):
        where = f"probes[{i}]"
        entry = _mapping(entry, where)
        if not entry.get("name") or not entry.get("target"):
            raise ConfigError(f"{where}: name and target are required")
        expected = [int(code) for code in _list(entry.get("expected_status"), f"{where}.expected_status")]
        probes.append(Probe(
            name=str(entry["name"]),
            target=str(entry["target"]),
            module=str(entry.get("module", "http")),
            interval=_duration(entry.get("interval", 30), f"{where}.interval"),
            timeout=_duration(entry.get("timeout", 10), f"{where}.timeout"),
            labels=_string_map(entry.get("labels"), f"{where}.labels"),
            expected_status=expected
        ))
    return probes


def parse_config(data: Any, settings: Optional[Settings] = None) -> MetricStoreConfig:
    """
    Build typed configuration from a decoded YAML document

    Raises:
        ConfigError: on any structural, duration or expression error
    """
    settings = settings or Settings()
    document = _mapping(data, "config")
    unknown = set(document) - {"global", "scrape_configs", "rule_groups", "probes"}
    if unknown:
        raise ConfigError(f"config: unknown section(s) {sorted(unknown)}")

    try:
        _apply_global(settings, _mapping(document.get("global"), "global"))
        settings.validate()
        config = MetricStoreConfig(
            settings=settings,
            scrape_targets=_scrape_targets(_list(document.get("scrape_configs"), "scrape_configs"), settings),
            rule_groups=_rule_groups(_list(document.get("rule_groups"), "rule_groups"), settings),
            probes=_probes(_list(document.get("probes"), "probes"))
        )
    except (ValueError, TypeError) as e:
        raise ConfigError(str(e))

    logger.info(
        f"Loaded config: {len(config.scrape_targets)} scrape target(s), "
        f"{len(config.rule_groups)} rule group(s), {len(config.probes)} probe(s)"
    )
    return config


def load_config(path: Union[str, Path], settings: Optional[Settings] = None) -> MetricStoreConfig:
    """Load a YAML configuration file"""
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}")
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}")
    return parse_config(data or {}, settings)
