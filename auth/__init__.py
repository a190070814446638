"""auth/ -- Authentication, invitation and one-time code package for the CCM admin portal.

Layer rule: auth/ imports stdlib, third-party libraries and core.config only.
It does NOT import from api/ or submissions/.
api/ imports from auth/, not the other way around.
"""
