"""
Loan Harness - Engine Package

Ambient services shared by the harness core and the gateway:
  - engine.config: three-tier YAML/env configuration and typed settings
  - engine.logging: JSON log lines, per-run structured logger
  - engine.secrets: registry of live secrets and redaction
"""
