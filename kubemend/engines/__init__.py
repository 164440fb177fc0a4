"""
Evaluation, safety, remediation and execution engines.
"""
