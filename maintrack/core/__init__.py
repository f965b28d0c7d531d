"""Configuration and logging for the breakdown tracker."""
