
# Seed tariff table per specialty (CLP). Extend as needed.
# Missing fonasa/isapre prices fall back to the configured ratios.
SEED_TARIFF = {
    # specialty: (base, fonasa, isapre, particular)
    "Medicina General": (30000, 21000, 25500, 30000),
    "Pediatría": (35000, 24500, None, 35000),
    "Cardiología": (50000, 35000, 42500, 50000),
    "Dermatología": (45000, None, None, 45000),
    "Traumatología": (48000, 33600, 40800, None),
    "Ginecología": (42000, 29400, 35700, 42000),
    "Oftalmología": (40000, None, 34000, 40000),
    "Psicología": (38000, 26600, None, None),
}
