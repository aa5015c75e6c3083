"""Container-to-host command execution over SSH."""
