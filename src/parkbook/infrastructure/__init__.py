"""Infrastructure layer: persistence, messaging and payment providers"""
