"""Domain layer: entities, value objects and billing rules"""
