"""
winfleet/models/ssh.py

SSH models for reaching Windows instances through their OpenSSH server.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class InstanceCredentials(BaseModel):
    """
    Credentials shared by every instance in the fleet.
    Windows images ship with the key authorized for the local administrator.
    """

    user: str = "Administrator"
    private_key: str

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        return val


class SSHConfig(BaseModel):
    """
    SSH configuration for one established session.
    If host_keys is empty => no known keys => the transport does TOFU on connect.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str
    host_keys: Optional[List[str]] = None
