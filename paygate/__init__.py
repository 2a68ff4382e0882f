"""Paygate: one payment lifecycle over many external payment gateways."""

__version__ = "0.1.0"
