"""Database access, kubectl integration and the port-forward tunnel."""
