"""Parsing and payload helpers shared by transports and measurement probes."""
