"""Test doubles and factories for the sensor driver and controller."""
