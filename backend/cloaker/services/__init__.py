"""
Cloaker services.

Pure decision logic (detection, scoring, filters, decision) plus the stateful
collaborators it needs: policy store, counters, webhooks and domains.
"""
