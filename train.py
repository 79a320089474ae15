#!/usr/bin/env python3
from bpmf.train import main

if __name__ == "__main__":
    main()
