"""
Override Resolver

Merges the four configuration layers into one canonical ClusterSpec:

    file config < CLI flags < dynamic -D overrides < pod-template patch

Each layer is a partial-update function applied left to right over a
SpecAccumulator (a nested dict seeded with defaults). Every write records the
dotted field path and the layer that made it, so the winner of each field is
always the last layer in precedence order that touched it.

Dynamic overrides look like `kubernetes.worker.replicas=5`. Keys are applied
in registry order (generic keys before specific ones), so the outcome does not
depend on argument order across different keys. Repeating a key keeps the last
value; composite keys (labels, annotations, node selectors) replace the whole
mapping rather than merging into it.
"""

import copy
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import get_settings
from .constants import COMPONENT_MASTER, COMPONENT_WORKER
from .errors import ConfigFileError, MalformedOverride, TemplateError, UnknownOverrideKey
from .kubernetes.template import load_pod_template
from .models import TIERS, ClusterSpec, MasterSpec, ServiceSpec, WorkerSpec

logger = logging.getLogger(__name__)

LAYER_FILE = "file"
LAYER_CLI = "cli"
LAYER_DYNAMIC = "dynamic"
LAYER_TEMPLATE = "template"

DYNAMIC_PREFIX = "kubernetes."


# =============================================================================
# Accumulator
# =============================================================================

class SpecAccumulator:
    """
    Builder-style accumulator the override layers write into.

    Values are stored in a nested dict mirroring ClusterSpec; `sources`
    remembers which layer last wrote each dotted path.
    """

    def __init__(self, seed: Mapping[str, Any]):
        self.data: Dict[str, Any] = copy.deepcopy(dict(seed))
        self.sources: Dict[str, str] = {}

    def set(self, path: str, value: Any, layer: str) -> None:
        keys = path.split(".")
        node = self.data
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[keys[-1]] = copy.deepcopy(value)

        # A write to a record replaces anything recorded beneath it
        for recorded in [p for p in self.sources if p.startswith(path + ".")]:
            del self.sources[recorded]
        self.sources[path] = layer

    def get(self, path: str, default: Any = None) -> Any:
        node: Any = self.data
        for key in path.split("."):
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def build(self) -> ClusterSpec:
        """Canonicalize and convert into a ClusterSpec."""
        if not self.data.get("cluster_id"):
            raise MalformedOverride("cluster_id", self.data.get("cluster_id"), "cluster_id is required")

        payload = _sorted_mappings(self.data)
        payload["field_sources"] = dict(sorted(self.sources.items()))
        try:
            return ClusterSpec.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            path = ".".join(str(part) for part in first["loc"])
            raise MalformedOverride(path, first.get("input"), first["msg"]) from e


def _sorted_mappings(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _sorted_mappings(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, list):
        return [_sorted_mappings(item) for item in value]
    return value


def default_seed() -> Dict[str, Any]:
    """Starting point for resolution, taken from process settings."""
    settings = get_settings()
    return {
        "namespace": settings.default_namespace,
        "cluster_domain": settings.cluster_domain,
        "image_pull_policy": settings.default_image_pull_policy,
        "master": MasterSpec(image=settings.default_image).model_dump(),
        "worker": WorkerSpec(image=settings.default_image).model_dump(),
        "service": ServiceSpec().model_dump(),
    }


@dataclass(frozen=True)
class OverrideLayer:
    """One configuration source in the precedence chain."""

    name: str
    rank: int
    apply: Callable[[SpecAccumulator], None]


# =============================================================================
# Value parsers
# =============================================================================

_TRUE_VALUES = ("true", "yes", "1", "on")
_FALSE_VALUES = ("false", "no", "0", "off")


def _parse_str(key: str, value: str) -> str:
    return value.strip()


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise MalformedOverride(key, value, "expected an integer")


def _parse_bool(key: str, value: str) -> bool:
    text = value.strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise MalformedOverride(key, value, "expected true or false")


def _parse_mapping(key: str, value: str) -> Dict[str, str]:
    """Parse `k=v,k=v` into a dict; an empty value clears the mapping."""
    result: Dict[str, str] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise MalformedOverride(key, value, f"expected k=v pairs, got {item!r}")
        name, item_value = item.split("=", 1)
        if not name.strip():
            raise MalformedOverride(key, value, "empty key in k=v pair")
        result[name.strip()] = item_value.strip()
    return result


def _parse_list(key: str, value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_cpu(key: str, value: str) -> str:
    """A bare number of cores becomes millicores; anything else is kept verbatim."""
    text = value.strip()
    try:
        cores = Decimal(text)
    except InvalidOperation:
        return text
    if not cores.is_finite():
        return text
    return f"{int(cores * 1000)}m"


# =============================================================================
# Dynamic key registry
# =============================================================================

@dataclass(frozen=True)
class DynamicKey:
    """A `kubernetes.*` override key and the ClusterSpec paths it writes."""

    key: str
    paths: Tuple[str, ...]
    parser: Callable[[str, str], Any] = _parse_str


def _tier_keys(tier: str) -> List[DynamicKey]:
    return [
        DynamicKey(f"{tier}.image", (f"{tier}.image",)),
        DynamicKey(f"{tier}.replicas", (f"{tier}.replicas",), _parse_int),
        DynamicKey(f"{tier}.storage-class", (f"{tier}.storage_class",)),
        DynamicKey(f"storage.{tier}-size", (f"{tier}.storage_size",)),
        DynamicKey(f"{tier}.pod-template", (f"{tier}.pod_template",)),
        DynamicKey(
            f"{tier}.cpu",
            (f"{tier}.resources.requests.cpu", f"{tier}.resources.limits.cpu"),
            _parse_cpu,
        ),
        DynamicKey(
            f"{tier}.memory",
            (f"{tier}.resources.requests.memory", f"{tier}.resources.limits.memory"),
        ),
        DynamicKey(f"{tier}.node-selector", (f"{tier}.node_selector",), _parse_mapping),
        DynamicKey(f"{tier}.labels", (f"{tier}.labels",), _parse_mapping),
        DynamicKey(f"{tier}.annotations", (f"{tier}.annotations",), _parse_mapping),
        DynamicKey(f"{tier}.service-account", (f"{tier}.service_account",)),
        DynamicKey(f"{tier}.priority-class", (f"{tier}.priority_class",)),
        DynamicKey(f"{tier}.dns-policy", (f"{tier}.dns_policy",)),
        DynamicKey(f"{tier}.graceful-shutdown", (f"{tier}.graceful_shutdown",), _parse_bool),
    ]


# Generic keys come first so the tier-specific keys below them win.
DYNAMIC_KEYS: Tuple[DynamicKey, ...] = tuple(
    [
        DynamicKey("cluster-id", ("cluster_id",)),
        DynamicKey("namespace", ("namespace",)),
        DynamicKey("cluster.domain", ("cluster_domain",)),
        DynamicKey("image.pull-policy", ("image_pull_policy",)),
        DynamicKey("image.pull-secrets", ("image_pull_secrets",), _parse_list),
        DynamicKey("container.image", ("master.image", "worker.image")),
        DynamicKey("storage.class", ("master.storage_class", "worker.storage_class")),
        DynamicKey("storage.size", ("master.storage_size", "worker.storage_size")),
        DynamicKey("pod.dns-policy", ("master.dns_policy", "worker.dns_policy")),
        DynamicKey("pod.priority-class", ("master.priority_class", "worker.priority_class")),
        DynamicKey("service.type", ("service.type",)),
        DynamicKey("service.annotations", ("service.annotations",), _parse_mapping),
        DynamicKey("service.external-ips", ("service.external_ips",), _parse_list),
        DynamicKey("service.session-affinity", ("service.session_affinity",)),
        DynamicKey("service.load-balancer-source-ranges", ("service.load_balancer_source_ranges",), _parse_list),
    ]
    + _tier_keys(COMPONENT_MASTER)
    + _tier_keys(COMPONENT_WORKER)
    + [
        DynamicKey("worker.host-network", ("worker.host_network",), _parse_bool),
        DynamicKey("worker.init-container", ("worker.init_container",), _parse_bool),
        DynamicKey("worker.anti-affinity", ("worker.anti_affinity",), _parse_bool),
    ]
)

_DYNAMIC_KEY_INDEX = {entry.key: entry for entry in DYNAMIC_KEYS}


def parse_dynamic_overrides(entries: Iterable[str]) -> Dict[str, str]:
    """
    Split `-D key=value` entries into a dict of keys without the prefix.

    Later entries for the same key replace earlier ones.

    Raises:
        MalformedOverride: Entry without '='
        UnknownOverrideKey: Key outside the `kubernetes.` namespace or unmapped
    """
    parsed: Dict[str, str] = {}
    for entry in entries:
        if "=" not in entry:
            raise MalformedOverride(entry, None, "expected key=value")
        key, value = entry.split("=", 1)
        key = key.strip()
        if not key.startswith(DYNAMIC_PREFIX):
            raise UnknownOverrideKey(key)
        short_key = key[len(DYNAMIC_PREFIX):]
        if short_key not in _DYNAMIC_KEY_INDEX and _env_target(short_key) is None:
            raise UnknownOverrideKey(key)
        if short_key in parsed:
            logger.debug(f"[RESOLVE] Override {key} given more than once, keeping the last value")
        parsed[short_key] = value
    return parsed


def _env_target(short_key: str) -> Optional[Tuple[str, str]]:
    """Map `master.env.NAME` to (tier, NAME)."""
    for tier in TIERS:
        prefix = f"{tier}.env."
        if short_key.startswith(prefix) and len(short_key) > len(prefix):
            return tier, short_key[len(prefix):]
    return None


# =============================================================================
# Layers
# =============================================================================

_FILE_TIER_FIELDS = {
    COMPONENT_MASTER: set(MasterSpec.model_fields) - {"pod_template_patch"},
    COMPONENT_WORKER: set(WorkerSpec.model_fields) - {"pod_template_patch"},
}
_FILE_SERVICE_FIELDS = set(ServiceSpec.model_fields)
_FILE_TOP_FIELDS = ("cluster_id", "namespace", "cluster_domain", "image_pull_policy", "image_pull_secrets")
_FILE_STORAGE_FIELDS = {
    "storage_class": ("master.storage_class", "worker.storage_class"),
    "master_storage_class": ("master.storage_class",),
    "worker_storage_class": ("worker.storage_class",),
    "size": ("master.storage_size", "worker.storage_size"),
    "master_size": ("master.storage_size",),
    "worker_size": ("worker.storage_size",),
}


def file_layer(file_config: Optional[Mapping[str, Any]]) -> OverrideLayer:
    """
    Layer for the base configuration file.

    The file has a `cluster` section (storage system configuration) and a
    `kubernetes` section (deployment settings). Unknown keys in the
    `kubernetes` section are rejected.
    """

    def apply(acc: SpecAccumulator) -> None:
        if not file_config:
            return
        for section in file_config:
            if section not in ("cluster", "kubernetes"):
                raise UnknownOverrideKey(str(section), LAYER_FILE)

        if file_config.get("cluster") is not None:
            acc.set("app_config", file_config["cluster"], LAYER_FILE)

        kube = file_config.get("kubernetes") or {}
        if not isinstance(kube, Mapping):
            raise MalformedOverride("kubernetes", kube, "expected a mapping")

        # storage is applied before the tier sections so per-tier values win
        ordered = sorted(kube, key=lambda name: (name not in ("storage",), name not in _FILE_TOP_FIELDS))
        for key in ordered:
            value = kube[key]
            if key in _FILE_TOP_FIELDS:
                acc.set(key, value, LAYER_FILE)
            elif key in TIERS:
                _apply_section(acc, key, value, _FILE_TIER_FIELDS[key])
            elif key == "service":
                _apply_section(acc, "service", value, _FILE_SERVICE_FIELDS)
            elif key == "storage":
                _apply_storage_section(acc, value)
            else:
                raise UnknownOverrideKey(f"kubernetes.{key}", LAYER_FILE)

    return OverrideLayer(LAYER_FILE, 0, apply)


def _apply_section(acc: SpecAccumulator, prefix: str, section: Any, allowed: Iterable[str]) -> None:
    if not isinstance(section, Mapping):
        raise MalformedOverride(f"kubernetes.{prefix}", section, "expected a mapping")
    allowed = set(allowed)
    for key, value in section.items():
        if key not in allowed:
            raise UnknownOverrideKey(f"kubernetes.{prefix}.{key}", LAYER_FILE)
        acc.set(f"{prefix}.{key}", value, LAYER_FILE)


def _apply_storage_section(acc: SpecAccumulator, section: Any) -> None:
    if not isinstance(section, Mapping):
        raise MalformedOverride("kubernetes.storage", section, "expected a mapping")
    for key in _FILE_STORAGE_FIELDS:
        if key in section:
            for path in _FILE_STORAGE_FIELDS[key]:
                acc.set(path, section[key], LAYER_FILE)
    for key in section:
        if key not in _FILE_STORAGE_FIELDS:
            raise UnknownOverrideKey(f"kubernetes.storage.{key}", LAYER_FILE)


# Generic flags come before tier-specific ones
CLI_FLAG_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("cluster_id", ("cluster_id",)),
    ("namespace", ("namespace",)),
    ("image", ("master.image", "worker.image")),
    ("master_image", ("master.image",)),
    ("worker_image", ("worker.image",)),
    ("image_pull_policy", ("image_pull_policy",)),
    ("master_replicas", ("master.replicas",)),
    ("worker_replicas", ("worker.replicas",)),
    ("storage_class", ("master.storage_class", "worker.storage_class")),
    ("master_storage_class", ("master.storage_class",)),
    ("worker_storage_class", ("worker.storage_class",)),
    ("master_storage_size", ("master.storage_size",)),
    ("worker_storage_size", ("worker.storage_size",)),
    ("service_type", ("service.type",)),
    ("master_pod_template", ("master.pod_template",)),
    ("worker_pod_template", ("worker.pod_template",)),
)

_CLI_FLAG_NAMES = {name for name, _ in CLI_FLAG_FIELDS}


def cli_layer(cli_flags: Optional[Mapping[str, Any]]) -> OverrideLayer:
    """Layer for explicit command-line flags; None values mean "not given"."""

    def apply(acc: SpecAccumulator) -> None:
        flags = cli_flags or {}
        for name in flags:
            if name not in _CLI_FLAG_NAMES:
                raise UnknownOverrideKey(name, LAYER_CLI)
        for name, paths in CLI_FLAG_FIELDS:
            value = flags.get(name)
            if value is None:
                continue
            for path in paths:
                acc.set(path, value, LAYER_CLI)

    return OverrideLayer(LAYER_CLI, 1, apply)


def dynamic_layer(dynamic_overrides: Optional[Sequence[str]]) -> OverrideLayer:
    """Layer for `-D kubernetes.key=value` entries."""

    def apply(acc: SpecAccumulator) -> None:
        overrides = parse_dynamic_overrides(dynamic_overrides or ())
        for entry in DYNAMIC_KEYS:
            if entry.key not in overrides:
                continue
            full_key = DYNAMIC_PREFIX + entry.key
            value = entry.parser(full_key, overrides[entry.key])
            for path in entry.paths:
                acc.set(path, value, LAYER_DYNAMIC)

        env_entries = sorted(
            (_env_target(key), value) for key, value in overrides.items() if _env_target(key)
        )
        for (tier, name), value in env_entries:
            acc.set(f"{tier}.env.{name}", value, LAYER_DYNAMIC)

    return OverrideLayer(LAYER_DYNAMIC, 2, apply)


def template_layer(
    template_patches: Optional[Mapping[str, Any]],
    loader: Callable[[str], Dict[str, Any]] = load_pod_template
) -> OverrideLayer:
    """
    Layer for pod-template patches.

    An explicit patch for a tier wins; otherwise the template file named by
    `<tier>.pod_template` (set by an earlier layer) is loaded.
    """

    def apply(acc: SpecAccumulator) -> None:
        patches = template_patches or {}
        for tier in patches:
            if tier not in TIERS:
                raise UnknownOverrideKey(str(tier), LAYER_TEMPLATE)

        for tier in TIERS:
            patch = patches.get(tier)
            if patch is None:
                path = acc.get(f"{tier}.pod_template")
                if not path:
                    continue
                patch = loader(path)
            if not isinstance(patch, Mapping):
                raise TemplateError(acc.get(f"{tier}.pod_template"), "pod template must be a mapping")
            acc.set(f"{tier}.pod_template_patch", dict(patch), LAYER_TEMPLATE)

    return OverrideLayer(LAYER_TEMPLATE, 3, apply)


# =============================================================================
# Public API
# =============================================================================

def load_config_file(path: str) -> Dict[str, Any]:
    """
    Read a YAML configuration file.

    Raises:
        ConfigFileError: If the file is missing, unreadable or not a mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigFileError(path, str(e)) from e
    except yaml.YAMLError as e:
        raise ConfigFileError(path, f"invalid YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(path, "top level must be a mapping")
    return data


def resolve(
    file_config: Optional[Mapping[str, Any]] = None,
    cli_flags: Optional[Mapping[str, Any]] = None,
    dynamic_overrides: Optional[Sequence[str]] = None,
    template_patches: Optional[Mapping[str, Any]] = None,
    loader: Callable[[str], Dict[str, Any]] = load_pod_template
) -> ClusterSpec:
    """
    Resolve the configuration layers into a ClusterSpec.

    Args:
        file_config: Parsed base configuration file
        cli_flags: Flag name -> value (None = not given)
        dynamic_overrides: `kubernetes.key=value` strings in command-line order
        template_patches: Tier name -> raw pod mapping
        loader: Reads a pod template file given its path

    Returns:
        Canonical ClusterSpec; identical inputs give identical output

    Raises:
        ResolutionError: Unknown key or malformed value
        TemplateError: A referenced pod template cannot be read
    """
    layers = sorted(
        [
            file_layer(file_config),
            cli_layer(cli_flags),
            dynamic_layer(dynamic_overrides),
            template_layer(template_patches, loader),
        ],
        key=lambda layer: layer.rank,
    )

    acc = SpecAccumulator(default_seed())
    for layer in layers:
        layer.apply(acc)

    spec = acc.build()
    logger.debug(f"[RESOLVE] Resolved cluster {spec.cluster_id} in {spec.namespace} ({len(spec.field_sources)} fields set)")
    return spec
