"""
Numeric helpers: output decoders, suppression, alignment and label sets.
"""
