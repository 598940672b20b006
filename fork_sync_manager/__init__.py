"""Keeps a downstream fork in step with its upstream through a staged branch cascade."""
