"""Parsers for custodian file formats."""
