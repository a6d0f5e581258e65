"""Pydantic models for projects, builds, deployments and configuration."""
