"""Data model for the control plane reconciler."""
