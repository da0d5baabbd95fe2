"""Configure a transparent proxy on Linux or Windows by routing system traffic through a TUN device."""

__version__ = "6.1.4"