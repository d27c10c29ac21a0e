"""SOCKS5 wire format, TCP server, per-user UDP relay and association counters."""