"""Command line interface for ExtensionOS"""
