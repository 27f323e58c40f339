# Copyright (c) 2025, LRNKit Authors
