# py2simip package
# Device communication engine for the SIMIP resistivity/IP instrument

__version__ = "0.1.0"
