"""Inspection script executed on every node.

The output is a series of sections, each introduced by a
``___SECTION_<NAME>___`` line, in the order GPU, CPU, MEM, PROCESS.
"""

SECTION_GPU = "GPU"
SECTION_CPU = "CPU"
SECTION_MEM = "MEM"
SECTION_PROCESS = "PROCESS"


REMOTE_SCRIPT = r'''
export PATH=$PATH:/usr/local/cuda/bin:/usr/sbin:/sbin
export LC_ALL=C
export LANG=C

# GPU: index,uuid,name,util.gpu,util.mem,mem.used,mem.total,temp,power.draw,power.limit
echo "___SECTION_GPU___"
nvidia-smi --query-gpu=index,uuid,name,utilization.gpu,utilization.memory,memory.used,memory.total,temperature.gpu,power.draw,power.limit --format=csv,noheader,nounits 2>/dev/null

# CPU: "%Cpu(s):  0.3 us,  0.7 sy,  0.0 ni, 99.0 id, ..."
echo "___SECTION_CPU___"
top -bn1 | grep "Cpu(s)"

# MEM: "Mem:  total used free ..." in MB
echo "___SECTION_MEM___"
free -m | grep Mem

# PROCESS: gpu_uuid,pid,used_mem,user,command
echo "___SECTION_PROCESS___"
p_out=$(nvidia-smi --query-compute-apps=gpu_uuid,pid,used_memory --format=csv,noheader,nounits 2>/dev/null)
if [ -z "$p_out" ]; then
  # No GPU processes (or no nvidia-smi): top host processes by RSS, uuid NONE
  ps -eo pid,user,rss,args --sort=-rss | head -n 20 | awk 'NR>1 {pid=$1; user=$2; mem=$3/1024; $1=$2=$3=""; cmd=$0; gsub(/^[ \t]+/, "", cmd); gsub(",", " ", cmd); print "NONE,"pid","mem","user","cmd}'
else
  echo "$p_out" | while IFS=, read -r gpu_uuid pid used_mem; do
    gpu_uuid=$(echo "$gpu_uuid" | tr -d '[:space:]')
    pid=$(echo "$pid" | tr -d '[:space:]')
    used_mem=$(echo "$used_mem" | tr -d '[:space:]')
    if [ -n "$pid" ]; then
      user=$(ps -o user= -p "$pid" 2>/dev/null | tr -d '[:space:]')
      comm=$(ps -o args= -p "$pid" 2>/dev/null)
      [ -z "$user" ] && user="unknown"
      [ -z "$comm" ] && comm="unknown"
      # commas would shift the CSV columns
      comm=$(echo "$comm" | tr ',' ' ')
      echo "$gpu_uuid,$pid,$used_mem,$user,$comm"
    fi
  done
fi
'''
