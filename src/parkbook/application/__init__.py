"""Application layer: use cases, DTOs and error taxonomy"""
