
__version__ = "0.1.0"
__banner__ = \
"""
# simpletransfer %s 
# LAN file exchange over HTTP
""" % __version__
