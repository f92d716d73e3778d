"""netquota - per-device network time and data quotas for UniFi networks."""

__version__ = "0.1.0"
