"""Clusters on Oracle Cloud Infrastructure created through Cluster API."""
