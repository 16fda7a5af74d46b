"""
Gantt Backend - HTTP surface for the Azure DevOps Gantt dashboard.

This package provides a FastAPI backend that reads project work items
from Azure DevOps, transforming them into the flattened row format
expected by the Gantt frontend.
"""
