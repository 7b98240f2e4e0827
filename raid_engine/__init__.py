"""Faction resource economy and raid resolution engine."""
