"""
URL configuration for the pledges app.

Routes:
    - POST reconciliation/run/ - Run a reconciliation sweep
    - GET reconciliation/outcomes/ - Reconciliation audit log

All routes are prefixed with /api/v1/pledges/ when included in the main URLconf.
"""

from django.urls import path

from pledges.views import ReconciliationOutcomeListView, ReconciliationTriggerView

app_name = "pledges"

urlpatterns = [
    path(
        "reconciliation/run/",
        ReconciliationTriggerView.as_view(),
        name="reconciliation_run",
    ),
    path(
        "reconciliation/outcomes/",
        ReconciliationOutcomeListView.as_view(),
        name="reconciliation_outcomes",
    ),
]
