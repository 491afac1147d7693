"""Command groups of the ocnectl CLI."""
