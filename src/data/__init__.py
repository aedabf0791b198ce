"""Price feed providers, protocol constants and default parameters.

Import :func:`src.data.provider_factory.create_provider` to build an oracle.
"""
