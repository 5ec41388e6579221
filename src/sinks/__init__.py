"""Output sinks: local durable files and the remote catalog API."""
