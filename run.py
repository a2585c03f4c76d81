#!/usr/bin/env python3
import ssltunnel.tunnel

ssltunnel.tunnel.main()
