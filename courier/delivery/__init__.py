"""License-gated package delivery.

  - Licenses: one-time activation keys bound to a device
  - Packages: catalogue of deliverable folders and their zip artifacts
  - Coordinator: assignment, push delivery and expiring download grants
"""
