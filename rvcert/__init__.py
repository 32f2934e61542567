"""rvcert - deterministic execution certification for RISC-V artifacts."""

__version__ = "0.1.0"
