"""
VIVK API Gateway service.
"""
