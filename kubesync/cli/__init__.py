"""Command-line client for the kubesync REST API."""
