"""Bandwidth estimation parts: ring buffer, windowed filter, packet queue, ack-height tracker and sampler."""