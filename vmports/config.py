"""Configuration loading and environment variable parsing for VM-Ports."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmports.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_SSH_GUEST_PORT,
    DEFAULT_SSH_HOST_IP,
    DEFAULT_SSH_HOST_PORT,
    DEFAULT_USABLE_PORT_RANGE,
    LEASE_TTL_SECONDS,
    LOCK_RETRY_INTERVAL,
    MACHINES_DIR_NAME,
    STATE_DIR,
    SUPPORTED_PROTOCOLS,
    TRUTHY,
    WILDCARD_HOST_IP,
)
from vmports.exceptions import ManagerError
from vmports.models import ExtraInUse, ForwardingRule, MachineConfig, RemapTable
from vmports.utils import (
    get_env,
    get_env_bool,
    log,
    parse_float_env,
    parse_int_env,
    parse_port,
    parse_port_range,
)


@dataclass
class RunSettings:
    """Invocation-wide settings shared by every machine in a run."""

    repair: bool = True
    remap: RemapTable = field(default_factory=dict)
    extra_in_use: ExtraInUse = field(default_factory=dict)
    lease_ttl: float = LEASE_TTL_SECONDS
    lock_retry_interval: float = LOCK_RETRY_INTERVAL
    lock_max_attempts: Optional[int] = None


def _as_bool(value: Any, label: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, str)):
        return str(value).strip().lower() in TRUTHY
    raise ManagerError(f"{label} must be a boolean (got {value!r})")


def parse_forwarding_rule(entry: Any, label: str) -> ForwardingRule:
    if not isinstance(entry, dict):
        raise ManagerError(f"{label}: expected a mapping with at least 'guest' and 'host'")
    unknown = set(entry) - {"guest", "host", "host_ip", "protocol", "disabled", "auto_correct", "id"}
    if unknown:
        raise ManagerError(f"{label}: unknown keys {', '.join(sorted(unknown))}")
    if "guest" not in entry or "host" not in entry:
        raise ManagerError(f"{label}: 'guest' and 'host' are required")

    guest_port = parse_port(entry["guest"], f"{label} guest port")
    host_port = parse_port(entry["host"], f"{label} host port")

    host_ip = entry.get("host_ip")
    if host_ip is not None:
        host_ip = str(host_ip).strip() or None

    protocol = str(entry.get("protocol") or "tcp").strip().lower()
    if protocol not in SUPPORTED_PROTOCOLS:
        supported = ", ".join(sorted(SUPPORTED_PROTOCOLS))
        raise ManagerError(f"{label}: unsupported protocol '{protocol}'. Supported: {supported}")

    rule_id = entry.get("id")
    return ForwardingRule(
        guest_port=guest_port,
        host_port=host_port,
        host_ip=host_ip,
        protocol=protocol,
        disabled=_as_bool(entry.get("disabled", False), f"{label} disabled"),
        auto_correct=_as_bool(entry.get("auto_correct", False), f"{label} auto_correct"),
        id=str(rule_id) if rule_id is not None else None,
    )


def default_ssh_rule() -> ForwardingRule:
    ssh_port = parse_int_env("SSH_PORT", str(DEFAULT_SSH_HOST_PORT), min_val=1, max_val=65535)
    return ForwardingRule(
        guest_port=DEFAULT_SSH_GUEST_PORT,
        host_port=ssh_port,
        host_ip=DEFAULT_SSH_HOST_IP,
        auto_correct=True,
        id="ssh",
    )


def _check_duplicates(name: str, rules: List[ForwardingRule]) -> None:
    seen_ids: Set[str] = set()
    seen_binds: Dict[Tuple[str, int, str], ForwardingRule] = {}
    for rule in rules:
        if rule.id is not None:
            if rule.id in seen_ids:
                raise ManagerError(f"Machine '{name}': forwarded port id '{rule.id}' is defined twice")
            seen_ids.add(rule.id)
        if rule.disabled:
            continue
        bind = (rule.host_ip or WILDCARD_HOST_IP, rule.host_port, rule.protocol)
        if bind in seen_binds:
            raise ManagerError(
                f"Machine '{name}': host port {rule.host_port} is forwarded twice "
                f"(guest {seen_binds[bind].guest_port} and guest {rule.guest_port})"
            )
        seen_binds[bind] = rule


def parse_machine(name: str, raw: Any, defaults: Dict[str, Any], state_dir: Path) -> MachineConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ManagerError(f"Machine '{name}' must be a mapping")

    data_dir_raw = raw.get("data_dir")
    data_dir = Path(str(data_dir_raw)).expanduser() if data_dir_raw else state_dir / MACHINES_DIR_NAME / name

    range_raw = raw.get("usable_port_range", defaults.get("usable_port_range"))
    env_range = get_env("USABLE_PORT_RANGE")
    if env_range:
        range_raw = env_range
    if range_raw is None:
        usable_port_range = DEFAULT_USABLE_PORT_RANGE
    else:
        usable_port_range = parse_port_range(range_raw, f"usable_port_range for '{name}'")

    entries = raw.get("forwarded_ports") or []
    if not isinstance(entries, list):
        raise ManagerError(f"Machine '{name}': forwarded_ports must be a list")
    rules = [
        parse_forwarding_rule(entry, f"Machine '{name}' forwarded_ports[{idx}]")
        for idx, entry in enumerate(entries)
    ]

    ssh_forward = _as_bool(raw.get("ssh_forward", defaults.get("ssh_forward", True)), f"{name} ssh_forward")
    if ssh_forward and not any(rule.id == "ssh" for rule in rules):
        rules.insert(0, default_ssh_rule())

    _check_duplicates(name, rules)
    return MachineConfig(
        name=name,
        data_dir=data_dir,
        env_dir=state_dir,
        forwarded_ports=rules,
        usable_port_range=usable_port_range,
    )


def load_machines(config_path: Optional[Path] = None, state_dir: Optional[Path] = None) -> List[MachineConfig]:
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if state_dir is None:
        state_dir = STATE_DIR
    if not config_path.exists():
        raise ManagerError(f"Machine config missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"{config_path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ManagerError(f"{config_path} must contain a YAML mapping")

    defaults = data.get("defaults") or {}
    machines_raw = data.get("machines") or {}
    if not isinstance(machines_raw, dict) or not machines_raw:
        raise ManagerError(f"No machines defined in {config_path}")

    return [parse_machine(str(name), raw, defaults, state_dir) for name, raw in machines_raw.items()]


def select_machines(machines: List[MachineConfig], names: Optional[List[str]]) -> List[MachineConfig]:
    if not names:
        return machines
    by_name = {machine.name: machine for machine in machines}
    missing = [name for name in names if name not in by_name]
    if missing:
        available = "\n    ".join(sorted(by_name))
        raise ManagerError(
            f"Unknown machine '{missing[0]}'.\n"
            f"  Available machines:\n"
            f"    {available}"
        )
    return [by_name[name] for name in names]


def parse_remap(raw: Optional[str]) -> RemapTable:
    """Parse ``2222:2200,8080:8081`` into a host port remap table."""
    remap: RemapTable = {}
    if not raw:
        return remap
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) != 2:
            raise ManagerError(f"Invalid PORT_COLLISION_REMAP entry '{entry}': expected format from_port:to_port")
        from_port = parse_port(parts[0], f"PORT_COLLISION_REMAP entry '{entry}'")
        to_port = parse_port(parts[1], f"PORT_COLLISION_REMAP entry '{entry}'")
        remap[from_port] = to_port
    return remap


def parse_extra_in_use(raw: Optional[str]) -> ExtraInUse:
    """Parse ``9000,127.0.0.1:9001`` into port -> host IP claims."""
    extra: ExtraInUse = {}
    if not raw:
        return extra
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        host_ip, sep, port_raw = entry.rpartition(":")
        if not sep:
            host_ip = WILDCARD_HOST_IP
        port = parse_port(port_raw, f"PORT_COLLISION_EXTRA_IN_USE entry '{entry}'")
        extra.setdefault(port, set()).add(host_ip.strip() or WILDCARD_HOST_IP)
    return extra


def parse_env() -> RunSettings:
    repair = get_env_bool("PORT_COLLISION_REPAIR", True)
    remap = parse_remap(get_env("PORT_COLLISION_REMAP"))
    extra_in_use = parse_extra_in_use(get_env("PORT_COLLISION_EXTRA_IN_USE"))
    lease_ttl = parse_float_env("LEASE_TTL", str(LEASE_TTL_SECONDS), min_val=1.0)
    lock_retry_interval = parse_float_env("LOCK_RETRY_INTERVAL", str(LOCK_RETRY_INTERVAL), min_val=0.0)
    max_attempts = parse_int_env("LOCK_MAX_ATTEMPTS", "0", min_val=0)
    if not repair:
        log("INFO", "PORT_COLLISION_REPAIR disabled; colliding forwarded ports will be reported, not repaired")
    return RunSettings(
        repair=repair,
        remap=remap,
        extra_in_use=extra_in_use,
        lease_ttl=lease_ttl,
        lock_retry_interval=lock_retry_interval,
        lock_max_attempts=max_attempts or None,
    )
