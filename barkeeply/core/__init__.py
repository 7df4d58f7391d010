"""
Core logic for media URLs and telemetry.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
boto3 or any infrastructure concerns. Backends are reached through small
protocols so the logic can be tested with in-memory fakes.
"""
