"""
Least Privilege Policy Validator.

Validates generated IAM trust and permission policies against least-privilege
rules and auto-fixes what can be fixed deterministically before the policies
are synthesized into IAM API payloads.
"""

__version__ = "0.1.0"
