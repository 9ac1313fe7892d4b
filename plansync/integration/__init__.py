"""Partner API adapters."""
