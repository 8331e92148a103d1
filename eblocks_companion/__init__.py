"""Compile, flash and monitor microcontroller boards over a shared serial port."""

__version__ = "0.1.0"
