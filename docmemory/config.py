"""
Memory Subsystem Configuration

Configuration dataclasses for docmemory: record store, graph store,
retention policy, maintenance engine and manager settings. Includes
load_config() for reading a JSON config file with silent fallback to
compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from docmemory.errors import ValidationError

__all__ = [
    "ValidationError",
    "StoreConfig",
    "GraphConfig",
    "PolicyLimits",
    "PruningPolicy",
    "MaintenanceConfig",
    "ManagerConfig",
    "MemoryConfig",
    "load_config",
]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (not isinstance(value, typ) or isinstance(value, bool)):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _check_floor(errors: List[str], name: str, value, floor) -> None:
    """Append an error unless value is a positive number >= floor."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        errors.append(f"{name}: expected number, got {type(value).__name__}")
        return
    if value <= 0:
        errors.append(f"{name}: {value} must be positive")
    elif value < floor:
        errors.append(f"{name}: {value} below minimum {floor}")


@dataclass
class StoreConfig:
    """Append-only record log configuration."""
    schema_version: int = 1
    index_file: str = ".index.json"
    fsync: bool = False

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.schema_version",
                     self.schema_version, 1, 1000, int)
        if not self.index_file or "/" in self.index_file:
            errors.append(f"store.index_file: invalid name {self.index_file!r}")
        return errors


@dataclass
class GraphConfig:
    """Knowledge graph persistence configuration."""
    directory: str = "graph"
    schema_version: int = 1
    enable_backups: bool = True
    keep_backups: int = 10
    similarity_threshold: float = 0.7

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "graph.schema_version",
                     self.schema_version, 1, 1000, int)
        _check_range(errors, "graph.keep_backups",
                     self.keep_backups, 1, 1000, int)
        _check_range(errors, "graph.similarity_threshold",
                     self.similarity_threshold, 0.0, 1.0, float)
        return errors


@dataclass
class PolicyLimits:
    """Floors that every retention policy must respect."""
    min_max_age_days: float = 1.0
    min_max_size_mb: float = 1.0
    min_max_entries: int = 100

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_floor(errors, "limits.min_max_age_days", self.min_max_age_days, 0)
        _check_floor(errors, "limits.min_max_size_mb", self.min_max_size_mb, 0)
        _check_floor(errors, "limits.min_max_entries", self.min_max_entries, 0)
        return errors


@dataclass
class PruningPolicy:
    """Retention policy driving the maintenance engine.

    Ages are in days, sizes in MB. Numeric fields must be positive and
    above the floors of the active PolicyLimits.
    """
    max_age: float = 180
    max_size: float = 500
    max_entries: int = 50000
    preserve_patterns: List[str] = field(
        default_factory=lambda: [
            "successful_deployment", "user_preference", "critical_error",
        ]
    )
    compression_threshold: float = 30
    redundancy_threshold: float = 0.85

    def validate(self, limits: Optional[PolicyLimits] = None) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        limits = limits or PolicyLimits()
        errors: List[str] = []
        _check_floor(errors, "policy.max_age", self.max_age, limits.min_max_age_days)
        _check_floor(errors, "policy.max_size", self.max_size, limits.min_max_size_mb)
        _check_floor(errors, "policy.max_entries", self.max_entries, limits.min_max_entries)
        if isinstance(self.max_entries, float) and not self.max_entries.is_integer():
            errors.append(f"policy.max_entries: {self.max_entries} is not an integer")
        _check_floor(errors, "policy.compression_threshold",
                     self.compression_threshold, 0)
        _check_floor(errors, "policy.redundancy_threshold",
                     self.redundancy_threshold, 0)
        if isinstance(self.redundancy_threshold, (int, float)) and self.redundancy_threshold > 1:
            errors.append(
                f"policy.redundancy_threshold: {self.redundancy_threshold} not in (0, 1]"
            )
        if not isinstance(self.preserve_patterns, list) or not all(
            isinstance(p, str) and p for p in self.preserve_patterns
        ):
            errors.append("policy.preserve_patterns: expected list of non-empty strings")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> PruningPolicy:
        known = set(cls.__dataclass_fields__.keys())
        unknown = sorted(set(d) - known)
        if unknown:
            raise ValidationError(f"Unknown policy field(s): {', '.join(unknown)}")
        return cls(**d)


@dataclass
class MaintenanceConfig:
    """Maintenance engine configuration."""
    backup_before_prune: bool = True
    compact_after_prune: bool = True
    run_budget_seconds: float = 300.0
    redundancy_scan_limit: int = 2000
    compression_strategy: Literal["gzip", "semantic"] = "gzip"
    compression_min_bytes: int = 100
    preserve_importance: float = 0.8
    limits: PolicyLimits = field(default_factory=PolicyLimits)

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_floor(errors, "maintenance.run_budget_seconds",
                     self.run_budget_seconds, 0)
        _check_range(errors, "maintenance.redundancy_scan_limit",
                     self.redundancy_scan_limit, 2, 1_000_000, int)
        if self.compression_strategy not in ("gzip", "semantic"):
            errors.append(
                f"maintenance.compression_strategy: unknown {self.compression_strategy!r}"
            )
        _check_range(errors, "maintenance.compression_min_bytes",
                     self.compression_min_bytes, 0, 10_000_000, int)
        _check_range(errors, "maintenance.preserve_importance",
                     self.preserve_importance, 0.0, 1.0, float)
        errors.extend(self.limits.validate())
        return errors


@dataclass
class ManagerConfig:
    """Memory manager configuration."""
    cache_size: int = 100

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "manager.cache_size", self.cache_size, 0, 100000, int)
        return errors


@dataclass
class MemoryConfig:
    """Top-level docmemory configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    policy: PruningPolicy = field(default_factory=PruningPolicy)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    manager: ManagerConfig = field(default_factory=ManagerConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "graph" in d:
            kwargs["graph"] = GraphConfig(**d["graph"])
        if "policy" in d:
            kwargs["policy"] = PruningPolicy.from_dict(d["policy"])
        if "maintenance" in d:
            section = dict(d["maintenance"])
            if "limits" in section:
                section["limits"] = PolicyLimits(**section["limits"])
            kwargs["maintenance"] = MaintenanceConfig(**section)
        if "manager" in d:
            kwargs["manager"] = ManagerConfig(**d["manager"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.graph.validate())
        errors.extend(self.maintenance.validate())
        errors.extend(self.policy.validate(self.maintenance.limits))
        errors.extend(self.manager.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MemoryConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = MemoryConfig()
        except ValidationError:
            if strict:
                raise
            cfg = MemoryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
