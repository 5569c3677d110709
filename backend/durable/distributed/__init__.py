"""Redis-backed stores and leases used when BACKEND_MODE=distributed."""
