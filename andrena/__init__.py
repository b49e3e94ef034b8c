"""Retrieve remote media, extract its audio and score it with a pretrained model."""

__version__ = "0.1.0"
