"""Compose Guardian: keeps a host's Docker Compose stack healthy from inside a container.

The agent reconciles configuration files, runs the host remediation scripts
over SSH, and checks/applies image updates. Its only persistence is a set of
lock-guarded JSON documents in a shared state directory.
"""

__version__ = "0.1.0"
