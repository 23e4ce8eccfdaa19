"""
Client packages for elevation data, WhiteboxTools hydrology and visualization
"""
