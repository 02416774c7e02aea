"""Physical constants and package defaults."""

# Iteration defaults for the MLEM/MAP iterators
DEFAULT_MAX_ITERATIONS = 1000
DEFAULT_TOLERANCE = 0.05
DEFAULT_BETA = 0.0
DEFAULT_N_MONTECARLO = 100

# Dose conversion: pSv/s -> mSv/h
S_TO_HR = 3600
PSV_TO_MSV = 1e-9

# Source strength (NCRP 151, Eq. 2.16)
# Fraction of neutrons that penetrate the head shielding (mean of 1 for Pb and 0.85 for W)
HEAD_TRANSMISSION_FACTOR = 0.93
# Treatment room surface area [cm^2]
ROOM_SURFACE_AREA_CM2 = 2353374.529
# Distance from the bremsstrahlung target to the point of measurement [cm]
SOURCE_DISTANCE_CM = 100.0
MU_TO_GY = 100.0
SCATTER_FLUENCE_COEFF = 5.4
THERMAL_FLUENCE_COEFF = 1.26
