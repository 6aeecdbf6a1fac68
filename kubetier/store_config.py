"""
Storage System Configuration

Models the configuration file of the storage system itself (the `cluster`
section of a kubetier config file) and renders the cluster-side copy that is
shipped to every pod through the `<cluster_id>-config` ConfigMap.

The rendered copy differs from the user's file in three ways:
- journal peers and client master addresses are generated from the master
  StatefulSet's stable DNS names
- relative metadata/journal directories are resolved under STORE_HOME
- the cluster id is pinned to the Kubernetes cluster id

Unknown keys are preserved so options kubetier does not model still reach the
storage processes unchanged.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BLOCK_SIZE,
    MASTER_JOURNAL_PORT,
    MASTER_RPC_PORT,
    MASTER_WEB_PORT,
    STORE_HOME,
    WORKER_RPC_PORT,
    WORKER_WEB_PORT,
    headless_name,
    master_name,
)

_DATA_DIR_PATTERN = re.compile(r"^\[([\w:]*)\](.+)$")

_SIZE_UNITS = (
    ("TB", 1024 ** 4),
    ("GB", 1024 ** 3),
    ("MB", 1024 ** 2),
    ("KB", 1024),
    ("B", 1),
)

_QUANTITY_UNITS = (
    ("Ti", 1024 ** 4),
    ("Gi", 1024 ** 3),
    ("Mi", 1024 ** 2),
    ("Ki", 1024),
)


class StorageType(str, Enum):
    """
    Storage media a worker data directory can live on.

    Attributes:
        MEM: tmpfs-backed directory (emptyDir with medium Memory)
        SSD, HDD, DISK: persistent directories backed by PVCs
        UFS: under file system passthrough
    """

    MEM = "mem"
    SSD = "ssd"
    HDD = "hdd"
    DISK = "disk"
    UFS = "ufs"

    @classmethod
    def from_string(cls, value: str) -> "StorageType":
        """Unknown media names fall back to DISK."""
        value_lower = value.lower().strip()
        for storage_type in cls:
            if storage_type.value == value_lower:
                return storage_type
        return cls.DISK

    def __str__(self) -> str:
        return self.value


def parse_size_string(value: str) -> int:
    """
    Parse a storage-system size string (10GB, 512MB, 1024) into bytes.

    Units are binary: 1KB == 1024 bytes.

    Raises:
        ValueError: If the number part is not an integer
    """
    text = str(value).strip().upper()
    multiplier = 1
    for suffix, unit in _SIZE_UNITS:
        if text.endswith(suffix):
            text = text[:-len(suffix)]
            multiplier = unit
            break

    text = text.strip()
    if not text.isdigit():
        raise ValueError(f"Invalid size string: {value}")
    return int(text) * multiplier


def format_bytes(size: int) -> str:
    """Format a byte count as the largest exact Kubernetes binary quantity."""
    for suffix, unit in _QUANTITY_UNITS:
        if size >= unit and size % unit == 0:
            return f"{size // unit}{suffix}"
    return str(size)


@dataclass(frozen=True)
class DataDir:
    """A worker data directory parsed from `[TYPE:SIZE]/path`."""

    storage_type: StorageType
    capacity: int
    path: str

    @property
    def is_memory(self) -> bool:
        return self.storage_type == StorageType.MEM

    @classmethod
    def parse(cls, value: str) -> "DataDir":
        """
        Parse a data dir declaration.

        Accepted forms:
            /data                -> disk, no capacity
            [SSD]/data/ssd       -> ssd, no capacity
            [20GB]/data          -> disk, 20GB
            [MEM:10GB]/data/mem  -> mem, 10GB

        Raises:
            ValueError: On more than one ':' in the prefix or a bad size
        """
        match = _DATA_DIR_PATTERN.match(value)
        if not match or not match.group(1):
            return cls(StorageType.DISK, 0, value)

        prefix, path = match.group(1), match.group(2)
        parts = prefix.split(":")
        if len(parts) == 1:
            if parts[0].isalpha():
                storage_name, capacity = parts[0], "0"
            else:
                storage_name, capacity = "disk", parts[0]
        elif len(parts) == 2:
            storage_name, capacity = parts
        else:
            raise ValueError(f"Incorrect data dir format: {value}")

        return cls(StorageType.from_string(storage_name), parse_size_string(capacity), path)


# =============================================================================
# Configuration sections
# =============================================================================

class MasterConf(BaseModel):
    rpc_port: int = MASTER_RPC_PORT
    web_port: int = MASTER_WEB_PORT
    meta_dir: str = "data/meta"

    class Config:
        extra = "allow"


class JournalConf(BaseModel):
    rpc_port: int = MASTER_JOURNAL_PORT
    journal_dir: str = "data/journal"

    class Config:
        extra = "allow"


class WorkerConf(BaseModel):
    rpc_port: int = WORKER_RPC_PORT
    web_port: int = WORKER_WEB_PORT
    data_dir: List[str] = ["[SSD]/data/data"]

    class Config:
        extra = "allow"


class ClientConf(BaseModel):
    block_size: str = DEFAULT_BLOCK_SIZE

    class Config:
        extra = "allow"


class AppConfig(BaseModel):
    """The `cluster` section of a kubetier config file."""

    master: MasterConf = Field(default_factory=MasterConf)
    journal: JournalConf = Field(default_factory=JournalConf)
    worker: WorkerConf = Field(default_factory=WorkerConf)
    client: ClientConf = Field(default_factory=ClientConf)

    class Config:
        extra = "allow"

    def data_dirs(self) -> List[DataDir]:
        return [DataDir.parse(entry) for entry in self.worker.data_dir]


def resolve_store_path(path: str) -> str:
    """Resolve a relative storage path under STORE_HOME."""
    if path.startswith("/"):
        return path
    return f"{STORE_HOME}/{path}"


def master_hostnames(cluster_id: str, namespace: str, replicas: int, cluster_domain: str) -> List[str]:
    """Stable DNS names of the master pods (via the headless service), ordinal order."""
    return [
        f"{master_name(cluster_id)}-{i}.{headless_name(cluster_id)}.{namespace}.svc.{cluster_domain}"
        for i in range(replicas)
    ]


def render_cluster_config(
    app_config: AppConfig,
    cluster_id: str,
    namespace: str,
    master_replicas: int,
    cluster_domain: str
) -> Dict[str, Any]:
    """
    Build the cluster-side configuration mapping for the ConfigMap.

    Args:
        app_config: User's storage configuration
        cluster_id: Kubernetes cluster id
        namespace: Namespace the cluster runs in
        master_replicas: Number of master pods (journal peers)
        cluster_domain: Cluster DNS domain

    Returns:
        Plain mapping ready for YAML serialization
    """
    rendered = app_config.model_dump()
    hostnames = master_hostnames(cluster_id, namespace, master_replicas, cluster_domain)

    rendered["cluster_id"] = cluster_id
    rendered["master"]["meta_dir"] = resolve_store_path(app_config.master.meta_dir)
    rendered["journal"]["journal_dir"] = resolve_store_path(app_config.journal.journal_dir)
    rendered["journal"]["journal_addrs"] = [
        {"id": i + 1, "hostname": hostname, "port": app_config.journal.rpc_port}
        for i, hostname in enumerate(hostnames)
    ]
    rendered["client"]["master_addrs"] = [
        {"hostname": hostname, "port": app_config.master.rpc_port}
        for hostname in hostnames
    ]
    return rendered
