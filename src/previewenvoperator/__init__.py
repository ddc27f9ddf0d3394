"""Provision short-lived preview environments on Kubernetes."""
