"""Core services for ExtensionOS"""
