from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .ledger import ResourceLedger


@dataclass
class Options:
    device: str
    root_size_gib: int = 64
    swap_size_gib: int = 8
    data_label: str = "DATA"
    vg_name: str = "luksvg"
    target_root: str = "/target"
    installer_timeout: float = 3600.0
    poll_interval: float = 1.0
    keyfile_path: str = "/etc/luks/boot_os.keyfile"
    keyfile_bytes: int = 512
    verbose: bool = False
    assume_yes: bool = False
    overwrite: bool = False
    dry_run: bool = False
    plan_only: bool = False


@dataclass
class Device:
    path: str

    @property
    def name(self) -> str:
        return self.path.rstrip("/").rsplit("/", 1)[-1]

    @property
    def partition_prefix(self) -> str:
        # nvme0n1, mmcblk0 and loop0 need a ``p`` before the index; sdb does not
        base = self.path.rstrip("/")
        return base + ("p" if base[-1:].isdigit() else "")

    def partition(self, index: int) -> str:
        return f"{self.partition_prefix}{index}"


@dataclass(frozen=True)
class PartitionSpec:
    index: int
    label: str
    role: str
    size_mib: Optional[int]
    type_code: str
    type_guid: str
    filesystem: str

    @property
    def remaining(self) -> bool:
        return self.size_mib is None


@dataclass
class PartitionPlan:
    device: Device
    capacity_bytes: int
    specs: List[PartitionSpec]

    def by_role(self, role: str) -> PartitionSpec:
        for spec in self.specs:
            if spec.role == role:
                return spec
        raise KeyError(role)

    def path_for(self, role: str) -> str:
        return self.device.partition(self.by_role(role).index)


class ContainerState(Enum):
    LOCKED = "locked"
    OPEN_PASSPHRASE = "unlocked-by-passphrase"
    OPEN_KEYFILE = "unlocked-by-keyfile"


@dataclass
class EncryptedContainer:
    source: str
    luks_type: str
    mapped_name: str
    label: Optional[str] = None
    formatted: bool = False
    state: ContainerState = ContainerState.LOCKED

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.mapped_name}"

    @property
    def is_open(self) -> bool:
        return self.state is not ContainerState.LOCKED


@dataclass
class VolumeGroup:
    name: str
    physical_volume: str
    swap_gib: int
    swap_lv: str = "swap"
    root_lv: str = "root"
    created: List[str] = field(default_factory=list)

    def lv_path(self, lv: str) -> str:
        # device-mapper escapes dashes inside VG/LV names by doubling them
        vg = self.name.replace("-", "--")
        return f"/dev/mapper/{vg}-{lv.replace('-', '--')}"

    @property
    def root_path(self) -> str:
        return self.lv_path(self.root_lv)

    @property
    def swap_path(self) -> str:
        return self.lv_path(self.swap_lv)


@dataclass
class KeyFile:
    path: str
    host_path: str
    length: int
    mode: int = 0o400
    bound: List[str] = field(default_factory=list)


@dataclass
class InstallationTarget:
    root: str
    boot: str
    esp: str
    binds: List[str] = field(default_factory=list)


@dataclass
class ProvisionContext:
    """Everything the phases share, passed explicitly from step to step."""

    options: Options
    device: Device
    plan: Optional[PartitionPlan] = None
    boot: Optional[EncryptedContainer] = None
    root: Optional[EncryptedContainer] = None
    volume_group: Optional[VolumeGroup] = None
    keyfile: Optional[KeyFile] = None
    target: Optional[InstallationTarget] = None
    passphrases: Dict[str, str] = field(default_factory=dict, repr=False)
    ledger: ResourceLedger = field(default_factory=ResourceLedger)

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    def containers(self) -> List[EncryptedContainer]:
        return [c for c in (self.boot, self.root) if c is not None]
