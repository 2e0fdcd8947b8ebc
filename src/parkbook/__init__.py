"""ParkBook: parking slot reservation and overstay billing engine"""

__version__ = "0.1.0"
