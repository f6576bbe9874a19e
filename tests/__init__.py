"""Test package for the prediction race client engine."""
