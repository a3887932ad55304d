"""Configuration management for nftlend."""

from dataclasses import dataclass

from nftlend.core import BPS_DENOMINATOR, ConfigurationError


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("standard", "json")


@dataclass
class EngineConfig:
    """Main configuration for the lending engine.

    liquidation_threshold_bps is the LTV (debt / collateral value) at or above
    which an ACTIVE loan becomes liquidation-eligible: 8000 means 80%.
    """

    liquidation_threshold_bps: int = 8000
    journal_capacity: int = 1000
    history_limit: int = 100
    currency: str = "USDC"
    platform_fee_bps: int = 200
    insurance_fee_bps: int = 100
    auto_distribute: bool = True
    log_level: str = "INFO"
    log_format: str = "standard"

    def validate(self) -> "EngineConfig":
        """Check value ranges, returning self so calls can be chained."""
        if not 0 < self.liquidation_threshold_bps <= 10 * BPS_DENOMINATOR:
            raise ConfigurationError(
                f"liquidation_threshold_bps must be in (0, {10 * BPS_DENOMINATOR}], "
                f"got {self.liquidation_threshold_bps}"
            )
        if self.journal_capacity <= 0:
            raise ConfigurationError(f"journal_capacity must be positive, got {self.journal_capacity}")
        if self.history_limit <= 0:
            raise ConfigurationError(f"history_limit must be positive, got {self.history_limit}")
        for name in ("platform_fee_bps", "insurance_fee_bps"):
            value = getattr(self, name)
            if not 0 <= value <= BPS_DENOMINATOR:
                raise ConfigurationError(f"{name} must be in [0, {BPS_DENOMINATOR}], got {value}")
        if not self.currency:
            raise ConfigurationError("currency cannot be empty")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level!r}")
        if self.log_format not in _LOG_FORMATS:
            raise ConfigurationError(f"log_format must be one of {_LOG_FORMATS}, got {self.log_format!r}")
        return self

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from NFTLEND_* environment variables."""
        import os

        def _int(name: str, default: int) -> int:
            raw = os.getenv(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None

        return cls(
            liquidation_threshold_bps=_int("NFTLEND_LIQUIDATION_THRESHOLD_BPS", 8000),
            journal_capacity=_int("NFTLEND_JOURNAL_CAPACITY", 1000),
            history_limit=_int("NFTLEND_HISTORY_LIMIT", 100),
            currency=os.getenv("NFTLEND_CURRENCY", "USDC"),
            platform_fee_bps=_int("NFTLEND_PLATFORM_FEE_BPS", 200),
            insurance_fee_bps=_int("NFTLEND_INSURANCE_FEE_BPS", 100),
            auto_distribute=os.getenv("NFTLEND_AUTO_DISTRIBUTE", "true").lower() == "true",
            log_level=os.getenv("NFTLEND_LOG_LEVEL", "INFO"),
            log_format=os.getenv("NFTLEND_LOG_FORMAT", "standard"),
        ).validate()
