"""Reusable patterns shared by the commerce verticals.

Each module is a self-contained building block that can be adapted to any
domain: rules engines, workflow state machines, repository layers and
domain configuration.
"""
