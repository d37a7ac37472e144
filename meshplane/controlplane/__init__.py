"""Control plane reconciliation: render, apply, prune and wait for readiness."""
