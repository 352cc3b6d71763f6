"""
Test suite for the EEG microstate analysis project.

Contains unit tests for each segmentation and statistics stage plus
integration tests of the config-driven pipeline and CLI.
"""
