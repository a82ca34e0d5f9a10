"""
Fleet Firmware Rollout

Pushes one firmware image to a fleet of HTTP-managed devices:
- Concurrent, time-bounded connectivity probing
- Sequential upload -> install -> poll per device
- Per-device failure isolation and cooperative cancellation
"""

__version__ = "0.1.0"
