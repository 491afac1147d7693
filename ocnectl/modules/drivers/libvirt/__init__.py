"""Clusters of virtual machines managed through libvirt."""
