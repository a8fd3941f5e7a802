"""Gym access-control service: devices, biometric sync and attendance."""
