"""
DevOps Gantt - work item hierarchy to Gantt rows.

The ``core`` package holds the per-request data models, the row
aggregation pipeline and the Azure DevOps client.
"""
