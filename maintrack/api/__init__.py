"""HTTP API for the breakdown tracker."""
