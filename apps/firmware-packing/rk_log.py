#!/usr/bin/env python3
import sys

g_debug = False

def set_verbose(enabled):
    global g_debug
    g_debug = enabled

def LOGE(msg):
    print(f"Error: {msg}", file=sys.stderr)

def LOGW(msg):
    print(f"Warning: {msg}", file=sys.stderr)

def LOGI(msg):
    print(msg, file=sys.stderr)

def LOGD(msg):
    if g_debug:
        print(f"Debug: {msg}", file=sys.stderr)
