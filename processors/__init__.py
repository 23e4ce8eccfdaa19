"""
Processors for coordinate systems, pour points, raster masking and terrain metrics
"""
