# This file is updated by hand at release time.
verstr = "0.1.0"
