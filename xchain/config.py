"""
Configuration for xchain.

Plain dataclasses with defaults; ``from_env()`` applies XCHAIN_* overrides.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_balances(name: str) -> Dict[str, int]:
    """Parse "addr=amount,addr2=amount" into opening native balances."""
    balances: Dict[str, int] = {}
    for entry in os.environ.get(name, "").split(","):
        if not entry.strip():
            continue
        address, sep, amount = entry.partition("=")
        if not sep or not address.strip():
            raise ValueError(f"{name}: expected address=amount, got {entry!r}")
        value = int(amount)
        if value < 0:
            raise ValueError(f"{name}: negative balance for {address.strip()}")
        balances[address.strip()] = balances.get(address.strip(), 0) + value
    return balances


@dataclass
class LedgerConfig:
    """One ledger side."""
    chain_id: int
    name: str = ""
    rpc_url: str = ""               # JSON-RPC endpoint for log queries (EVM)
    escrow_address: str = ""        # Contract emitting SecretRevealed events
    balances: Dict[str, int] = field(default_factory=dict)  # Opening native balances


@dataclass
class MonitorConfig:
    """Counter-chain monitor polling budget."""
    poll_interval: float = 5.0      # seconds before the 2nd attempt
    backoff_factor: float = 1.5
    max_interval: float = 60.0
    max_attempts: Optional[int] = 120
    max_seconds: Optional[float] = 3600.0

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        base = cls()
        return cls(
            poll_interval=_env_float("XCHAIN_MONITOR_POLL_INTERVAL", base.poll_interval),
            backoff_factor=_env_float("XCHAIN_MONITOR_BACKOFF", base.backoff_factor),
            max_interval=_env_float("XCHAIN_MONITOR_MAX_INTERVAL", base.max_interval),
            max_attempts=_env_int("XCHAIN_MONITOR_MAX_ATTEMPTS", base.max_attempts),
            max_seconds=_env_float("XCHAIN_MONITOR_MAX_SECONDS", base.max_seconds),
        )


@dataclass
class OrchestratorConfig:
    """Order orchestrator configuration."""
    # Relayer identity used for withdraw/cancel when set. Only effective
    # after the public stages; before that the designated party is used.
    relayer_address: Optional[str] = None
    default_src_safety_deposit: int = 0
    default_dst_safety_deposit: int = 0
    monitor: MonitorConfig = field(default_factory=MonitorConfig)

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        return cls(
            relayer_address=os.environ.get("XCHAIN_RELAYER_ADDRESS") or None,
            default_src_safety_deposit=_env_int("XCHAIN_SRC_SAFETY_DEPOSIT", 0),
            default_dst_safety_deposit=_env_int("XCHAIN_DST_SAFETY_DEPOSIT", 0),
            monitor=MonitorConfig.from_env(),
        )


@dataclass
class ServerConfig:
    """Coordinator HTTP server."""
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    source: LedgerConfig = field(default_factory=lambda: LedgerConfig(chain_id=84532, name="base_sepolia"))
    destination: LedgerConfig = field(default_factory=lambda: LedgerConfig(chain_id=1000, name="icp"))
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        base = cls()
        return cls(
            host=os.environ.get("XCHAIN_HOST", base.host),
            port=_env_int("XCHAIN_PORT", base.port),
            log_level=os.environ.get("XCHAIN_LOG_LEVEL", base.log_level).upper(),
            source=LedgerConfig(
                chain_id=_env_int("XCHAIN_SRC_CHAIN_ID", base.source.chain_id),
                name=os.environ.get("XCHAIN_SRC_NAME", base.source.name),
                rpc_url=os.environ.get("XCHAIN_SRC_RPC_URL", ""),
                escrow_address=os.environ.get("XCHAIN_SRC_ESCROW_ADDRESS", ""),
                balances=_env_balances("XCHAIN_SRC_BALANCES"),
            ),
            destination=LedgerConfig(
                chain_id=_env_int("XCHAIN_DST_CHAIN_ID", base.destination.chain_id),
                name=os.environ.get("XCHAIN_DST_NAME", base.destination.name),
                rpc_url=os.environ.get("XCHAIN_DST_RPC_URL", ""),
                escrow_address=os.environ.get("XCHAIN_DST_ESCROW_ADDRESS", ""),
                balances=_env_balances("XCHAIN_DST_BALANCES"),
            ),
            orchestrator=OrchestratorConfig.from_env(),
        )
