"""Equipment breakdown ticket tracker."""
