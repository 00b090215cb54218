# HTTP adapter for the escrow service
