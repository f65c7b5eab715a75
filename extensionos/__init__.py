"""ExtensionOS - lifecycle and migration management for plugins, themes and modules"""

__version__ = "0.1.0"
