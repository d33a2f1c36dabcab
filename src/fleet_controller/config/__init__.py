"""
Configuration management for the fleet controller.

Contains Pydantic settings that work across local-dev, aws-mock, and aws-prod
deployment modes.
"""
